"""
附属迁移模块测试
"""
import json

from pcmigratef.core.ancillary import AncillaryCollector, drive_script, parse_reg_query, write_ancillary_report

PROFILE_LIST = [
    "",
    "HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\ProfileList",
    "",
    "HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\ProfileList\\S-1-5-18",
    "    Flags    REG_DWORD    0xc",
    "    ProfileImagePath    REG_EXPAND_SZ    %systemroot%\\system32\\config\\systemprofile",
    "",
    "HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\ProfileList\\S-1-5-21-1-1001",
    "    ProfileImagePath    REG_EXPAND_SZ    C:\\Users\\Alice",
    "",
]

NETWORK = [
    "HKEY_USERS\\S-1-5-21-1-1001\\Network",
    "",
    "HKEY_USERS\\S-1-5-21-1-1001\\Network\\z",
    "    RemotePath    REG_SZ    \\\\fileserver\\share",
    "    UserName    REG_SZ    ",
    "",
]

ODBC = [
    "HKEY_LOCAL_MACHINE\\SOFTWARE\\ODBC\\ODBC.INI\\ODBC Data Sources",
    "    Sales    REG_SZ    SQL Server",
    "",
]


def responder(args):
    key = args[2]
    if "ProfileList" in key:
        return PROFILE_LIST, 0
    if "\\Network" in key:
        return (NETWORK, 0) if "1001" in key else ([], 1)
    if "WOW6432Node" in key:
        return [], 1
    if "ODBC" in key:
        return ODBC, 0
    return [], 1


class TestParseRegQuery:
    """测试 reg query 输出解析"""

    def test_keys_and_values(self):
        keys = parse_reg_query(PROFILE_LIST)
        assert len(keys) == 3
        assert keys[2].values["ProfileImagePath"] == "C:\\Users\\Alice"
        assert keys[1].values["Flags"] == "0xc"


class TestAncillaryCollector:
    """测试附属设置收集"""

    def test_collect(self, fake_runner_cls):
        runner = fake_runner_cls(responder=responder)
        report = AncillaryCollector(runner=runner).collect("OLDPC", ["alice", "bob"])

        assert report.mapped_drives == {"alice": {"Z": "\\\\fileserver\\share"}}
        assert report.dsns == {"Sales": "SQL Server"}
        assert any("bob" in w for w in report.warnings)
        assert runner.calls[0][:2] == ["reg", "query"]
        assert runner.calls[0][2].startswith("\\\\OLDPC\\HKLM\\")

    def test_unreadable_profile_list_is_warning(self, fake_runner_cls):
        runner = fake_runner_cls(lines=[], code=1)
        report = AncillaryCollector(runner=runner).collect("OLDPC", ["alice"])
        assert report.mapped_drives == {}
        assert len(report.warnings) == 2

    def test_missing_reg_exe(self, fake_runner_cls):
        runner = fake_runner_cls(raises=FileNotFoundError("reg"))
        report = AncillaryCollector(runner=runner).collect("OLDPC", [])
        assert report.warnings


class TestDriveScript:
    """测试驱动器脚本"""

    def test_net_use_lines(self):
        script = drive_script({"Z": "\\\\fs\\a", "H": "\\\\fs\\home"})
        lines = script.split("\r\n")
        assert lines[0] == "@echo off"
        assert lines[2] == 'net use H: "\\\\fs\\home" /persistent:yes'
        assert lines[3] == 'net use Z: "\\\\fs\\a" /persistent:yes'

    def test_report(self, tmp_path, fake_runner_cls):
        report = AncillaryCollector(runner=fake_runner_cls(responder=responder)).collect("OLDPC", ["alice"])
        path = write_ancillary_report(tmp_path, "OLDPC", report)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["odbcDataSources"] == {"Sales": "SQL Server"}

"""
跳过策略测试
"""
from pcmigratef.core.skip_policy import SkipPolicy, split_relative


class TestSkipPolicy:
    """测试云同步目录跳过"""

    def test_matches_any_component(self):
        policy = SkipPolicy.cloud_placeholders()
        assert policy.matches("OneDrive\\doc.txt")
        assert policy.matches("Documents/onedrive/doc.txt")
        assert policy.check("OneDrive - Contoso\\a.txt") == (True, "onedrive - *")

    def test_does_not_match_substrings(self):
        policy = SkipPolicy.cloud_placeholders()
        assert not policy.matches("Documents\\OneDriveNotes.txt")
        assert not policy.matches("MyOneDrive\\a.txt")

    def test_disabled(self):
        policy = SkipPolicy.cloud_placeholders(enabled=False)
        assert not policy.matches("OneDrive\\a.txt")
        assert policy.robocopy_exclude_dirs() == []

    def test_none(self):
        assert not SkipPolicy.none().matches("OneDrive\\a.txt")

    def test_split_relative(self):
        assert split_relative("a\\b/c\\\\d") == ["a", "b", "c", "d"]

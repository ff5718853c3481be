"""
pcmigratef 的命令行入口点，使用 Typer 实现命令行界面
"""
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pyperclip
import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .config import MigrationConfig, load_config
from .core.errors import ManifestError, PlanError
from .core.exit_codes import describe, explain, is_fatal
from .core.hosts import transfer_log_path
from .core.models import (
    AclMode,
    MigrationContext,
    StageRun,
    StageStatus,
    TransferMode,
    TransferSpec,
    TuningProfile,
    UsmtOptions,
)
from .core.planner import DryRunPlanner, load_plan, save_plan, summarize
from .core.progress import ProgressAggregator
from .core.replayer import SelectiveReplayer
from .core.robocopy import MIRROR_CONFIRMATION_TOKEN, RobocopyInvoker
from .core.skip_policy import SkipPolicy
from .core.stages import OPTIONAL_STAGES, StageSequencer
from .core.telemetry import MANIFEST_FILE_NAME, read_manifest
from .core.tuning import LinkSpeedProbe, TuningAdvisor, compute
from .ui.progress_view import run_with_progress


def setup_logger(app_name="app", project_root=None, console_output=True):
    """配置 Loguru 日志系统

    Args:
        app_name: 应用名称，用于日志目录
        project_root: 项目根目录，默认为当前工作目录
        console_output: 是否输出到控制台，默认为True

    Returns:
        tuple: (logger, config_info)
            - logger: 配置好的 logger 实例
            - config_info: 包含日志配置信息的字典
    """
    if project_root is None:
        project_root = Path.cwd()

    # 清除默认处理器
    logger.remove()

    if console_output:
        logger.add(
            sys.stdout,
            level="INFO",
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <blue>{elapsed}</blue> | <level>{level.icon} {level: <8}</level> | <cyan>{name}:{function}:{line}</cyan> - <level>{message}</level>"
        )

    # 使用 datetime 构建日志路径
    current_time = datetime.now()
    date_str = current_time.strftime("%Y-%m-%d")
    hour_str = current_time.strftime("%H")
    minute_str = current_time.strftime("%M%S")

    log_dir = os.path.join(project_root, "logs", app_name, date_str, hour_str)
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{minute_str}.log")

    logger.add(
        log_file,
        level="DEBUG",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {elapsed} | {level.icon} {level: <8} | {name}:{function}:{line} - {message}",
        enqueue=True,
    )

    config_info = {
        'log_file': log_file,
    }

    logger.info(f"日志系统已初始化，应用名称: {app_name}")
    return logger, config_info


app = typer.Typer(help="工作站迁移工具 - 通过管理共享迁移文件系统与用户配置文件")

console = Console()

STATUS_STYLES = {
    StageStatus.OK: "green",
    StageStatus.WARN: "yellow",
    StageStatus.ERROR: "red",
    StageStatus.SKIPPED: "dim",
}


class SessionState:
    """命令行全局选项"""

    def __init__(self):
        self.config: MigrationConfig = MigrationConfig()
        self.source: Optional[str] = None
        self.destination: Optional[str] = None
        self.profiles: List[str] = []
        self.log_root: Path = Path("logs")
        self.store: Optional[str] = None
        self.tuning: Optional[str] = None
        self.throttle: Optional[bool] = None
        self.acl: Optional[str] = None
        self.skip_onedrive: Optional[bool] = None
        self.concurrency: Optional[int] = None
        self.encryption_key: Optional[str] = None
        self.active_days: Optional[int] = None
        self.capture_all: bool = False
        self.remaps: List[str] = []
        self.no_shadow_copy: bool = False


state = SessionState()


@app.callback()
def main_callback(
    config: Optional[Path] = typer.Option(None, "--config", help="TOML 配置文件路径"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="源主机名"),
    dest: Optional[str] = typer.Option(None, "--dest", "-d", help="目标主机名"),
    profile: Optional[List[str]] = typer.Option(None, "--profile", "-p", help="要迁移的用户配置文件，可重复"),
    log_root: Optional[Path] = typer.Option(None, "--log-root", help="会话日志根目录，默认取配置文件中的 log_root"),
    store: Optional[str] = typer.Option(None, "--store", help="USMT 状态存储路径"),
    tuning: Optional[str] = typer.Option(None, "--tuning", "-t", help="调优预设: auto/conservative/balanced/aggressive/wifi"),
    throttle: Optional[bool] = typer.Option(None, "--throttle/--no-throttle", help="工作时间 (8-18 点) 限速"),
    acl: Optional[str] = typer.Option(None, "--acl", help="ACL 模式: inherit/preserve"),
    skip_onedrive: Optional[bool] = typer.Option(None, "--skip-onedrive/--include-onedrive", help="跳过 OneDrive 等云同步目录"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="并行复制的配置文件数量"),
    key: Optional[str] = typer.Option(None, "--key", help="USMT 加密/解密密钥"),
    active_days: Optional[int] = typer.Option(None, "--active-days", help="只捕获最近 N 天内活动的用户"),
    capture_all: bool = typer.Option(False, "--all-users", help="捕获/还原所有用户 (/all)"),
    remap: Optional[List[str]] = typer.Option(None, "--remap", help="用户重映射 OLD=NEW，可重复"),
    no_shadow_copy: bool = typer.Option(False, "--no-vsc", help="捕获时不使用卷影副本"),
    clipboard: bool = typer.Option(False, "--clipboard", help="从剪贴板读取用户配置文件名（每行一个）"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="不在控制台输出日志"),
):
    """工作站迁移工具"""
    setup_logger(app_name="pcmigratef", console_output=not quiet)
    try:
        state.config = load_config(config)
    except FileNotFoundError as e:
        logger.error(f"配置文件不存在: {e}")
        raise typer.Exit(code=2)
    state.source = source
    state.destination = dest
    state.profiles = list(profile or [])
    if clipboard:
        state.profiles.extend(p for p in profiles_from_clipboard() if p not in state.profiles)
    state.log_root = log_root or Path(state.config.log_root)
    state.store = store
    state.tuning = tuning
    state.throttle = throttle
    state.acl = acl
    state.skip_onedrive = skip_onedrive
    state.concurrency = concurrency
    state.encryption_key = key
    state.active_days = active_days
    state.capture_all = capture_all
    state.remaps = list(remap or [])
    state.no_shadow_copy = no_shadow_copy


def profiles_from_clipboard() -> List[str]:
    """从剪贴板读取多行配置文件名"""
    content = pyperclip.paste()
    names = []
    for line in (content or "").splitlines():
        if line := line.strip().strip('"').strip("'"):
            names.append(line)
    logger.info(f"从剪贴板读取到 {len(names)} 个配置文件名")
    return names


def parse_remaps(pairs: List[str]) -> dict:
    remaps = {}
    for pair in pairs:
        if "=" not in pair:
            logger.error(f"无效的重映射: {pair}，格式应为 OLD=NEW")
            raise typer.Exit(code=2)
        old, new = pair.split("=", 1)
        remaps[old.strip()] = new.strip()
    return remaps


def build_context() -> MigrationContext:
    """把命令行选项与配置文件合并成会话上下文"""
    if not state.source or not state.destination:
        logger.error("错误: 需要通过 --source 和 --dest 指定源主机和目标主机")
        raise typer.Exit(code=2)
    cfg = state.config
    try:
        tuning = TuningProfile((state.tuning or cfg.tuning_profile).lower())
        acl_mode = AclMode((state.acl or cfg.acl_mode).lower())
    except ValueError as e:
        logger.error(f"无效的选项: {e}")
        raise typer.Exit(code=2)

    return MigrationContext(
        source_host=state.source,
        destination_host=state.destination,
        profiles=state.profiles,
        acl_mode=acl_mode,
        tuning_profile=tuning,
        business_hours_throttle=cfg.business_hours_throttle if state.throttle is None else state.throttle,
        skip_onedrive=cfg.skip_onedrive if state.skip_onedrive is None else state.skip_onedrive,
        concurrency_limit=state.concurrency or cfg.concurrency_limit,
        log_root=state.log_root,
        state_store=state.store or cfg.state_store,
        usmt=UsmtOptions(
            use_shadow_copy=not state.no_shadow_copy,
            encryption_key=state.encryption_key,
            active_within_days=state.active_days,
            capture_all=state.capture_all,
            user_remaps=parse_remaps(state.remaps),
        ),
    )


def build_sequencer(context: MigrationContext, progress: ProgressAggregator) -> StageSequencer:
    return StageSequencer(
        context,
        config=state.config,
        progress=progress,
        confirm=lambda message: Confirm.ask(f"[bold yellow]{message}[/bold yellow]", default=False),
    )


def print_stage_runs(runs: List[StageRun]) -> None:
    table = Table(title="阶段结果")
    table.add_column("阶段", style="cyan")
    table.add_column("状态")
    table.add_column("详情", overflow="fold")
    for run in runs:
        style = STATUS_STYLES.get(run.status, "white")
        table.add_row(run.stage_id, f"[{style}]{run.status.value}[/{style}]", run.detail)
    console.print(table)


def run_stages(stage_ids: List[str], run_all: bool = False, include_optional: Optional[List[str]] = None) -> None:
    context = build_context()
    progress = ProgressAggregator()
    sequencer = build_sequencer(context, progress)

    def control():
        if run_all:
            return sequencer.run_all(include_optional or [])
        return [sequencer.run_stage(stage_id) for stage_id in stage_ids]

    runs = run_with_progress(control, progress, console, on_interrupt=sequencer.cancel)
    print_stage_runs(runs)
    if sequencer.cancelled:
        logger.error("操作已中断")
        raise typer.Exit(code=130)
    if any(run.status == StageStatus.ERROR for run in runs):
        raise typer.Exit(code=1)


@app.command()
def inventory():
    """清点源机器上的用户配置文件并生成报告"""
    run_stages(["inventory"])


@app.command()
def precopy():
    """并行预复制选中的用户配置文件"""
    run_stages(["precopy"])


@app.command()
def nonsystem():
    """复制源磁盘上的非系统目录（排除 Windows、Program Files、Users 等）"""
    run_stages(["nonsystem"])


@app.command()
def capture():
    """使用 scanstate 捕获用户状态并写入捕获清单"""
    run_stages(["capture"])


@app.command()
def cutover():
    """切换：增量复制 + loadstate 还原 + 完整性抽查"""
    run_stages(["cutover"])


@app.command()
def postlogin():
    """用户首次登录后再次增量复制"""
    run_stages(["postlogin"])


@app.command()
def provision():
    """复制配置包并（经确认后）运行配置脚本"""
    run_stages(["provision"])


@app.command()
def ancillary():
    """迁移映射驱动器并报告 ODBC 数据源"""
    run_stages(["ancillary"])


@app.command("run")
def run_all(
    with_stage: Optional[List[str]] = typer.Option(None, "--with", help=f"包含的可选阶段: {', '.join(sorted(OPTIONAL_STAGES))}"),
):
    """按顺序运行全部阶段"""
    include = list(with_stage or [])
    unknown = set(include) - OPTIONAL_STAGES
    if unknown:
        logger.error(f"未知的可选阶段: {', '.join(sorted(unknown))}")
        raise typer.Exit(code=2)
    run_stages([], run_all=True, include_optional=include)


def make_invoker() -> RobocopyInvoker:
    cfg = state.config
    return RobocopyInvoker(
        executable=cfg.robocopy_exe,
        retries=cfg.robocopy_retries,
        wait_seconds=cfg.robocopy_wait_seconds,
        encoding=cfg.console_encoding,
    )


def current_tuning():
    cfg = state.config
    profile = (state.tuning or cfg.tuning_profile).lower()
    throttle = cfg.business_hours_throttle if state.throttle is None else state.throttle
    return TuningAdvisor().advise(profile, throttle)


def skip_policy() -> SkipPolicy:
    enabled = state.config.skip_onedrive if state.skip_onedrive is None else state.skip_onedrive
    return SkipPolicy.cloud_placeholders(enabled=enabled)


@app.command()
def plan(
    source: str = typer.Argument(..., help="源目录"),
    destination: str = typer.Argument(..., help="目标目录"),
    out: Path = typer.Option(Path("plan.json"), "--out", "-o", help="计划文件输出路径"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", "-x", help="排除的目录名，可重复"),
):
    """试运行 (robocopy /L) 并把差异保存为 JSON 计划"""
    planner = DryRunPlanner(make_invoker(), current_tuning())
    log_path = transfer_log_path(state.log_root / "transfers", "dryrun")
    try:
        changeset = planner.plan(source, destination, exclude or [], log_path=log_path, skip_policy=skip_policy())
    except PlanError as e:
        logger.error(f"生成计划失败: {e}")
        raise typer.Exit(code=1)
    save_plan(changeset, out)
    print_plan_summary(summarize(changeset), out)


def print_plan_summary(counts: dict, path: Path) -> None:
    table = Table(title=f"计划 {path}")
    table.add_column("类型", style="cyan")
    table.add_column("数量", justify="right")
    for change_type, count in counts.items():
        table.add_row(change_type, str(count))
    console.print(table)


@app.command("plan-show")
def plan_show(
    plan_file: Path = typer.Argument(..., help="计划文件"),
    limit: int = typer.Option(50, "--limit", "-n", help="最多显示的条目数"),
):
    """查看计划文件"""
    try:
        changeset = load_plan(plan_file)
    except PlanError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    console.print(Panel(f"{changeset.source} -> {changeset.destination}\n生成于 {changeset.generated_at}"))
    print_plan_summary(summarize(changeset), plan_file)
    table = Table()
    table.add_column("类型", style="cyan")
    table.add_column("大小", justify="right")
    table.add_column("路径")
    for entry in changeset.entries[:limit]:
        table.add_row(entry.type.value, "" if entry.size_hint is None else str(entry.size_hint), entry.relative_path)
    console.print(table)
    if len(changeset.entries) > limit:
        console.print(f"[dim]... 还有 {len(changeset.entries) - limit} 个条目[/dim]")


@app.command()
def replay(
    plan_file: Path = typer.Argument(..., help="计划文件"),
    log: Optional[Path] = typer.Option(None, "--log", help="重放日志路径"),
):
    """按计划文件逐个复制文件（只复制 NewFile/Older/Newer）"""
    try:
        changeset = load_plan(plan_file)
    except PlanError as e:
        logger.error(f"{e}，请重新生成计划")
        raise typer.Exit(code=1)
    log_path = log or transfer_log_path(state.log_root / "transfers", "replay")
    report = SelectiveReplayer(log_path).replay(changeset, skip_policy())
    console.print(
        f"[green]成功 {report.success_count}[/green]  [red]失败 {report.failed_count}[/red]  "
        f"[dim]策略跳过 {report.skipped}[/dim]  日志 {log_path}"
    )
    if report.failed_count:
        raise typer.Exit(code=1)


@app.command()
def mirror(
    source: str = typer.Argument(..., help="源目录"),
    destination: str = typer.Argument(..., help="目标目录（会删除源中不存在的文件）"),
    confirm_token: Optional[str] = typer.Option(None, "--confirm", help=f"确认令牌，必须为 {MIRROR_CONFIRMATION_TOKEN}"),
):
    """镜像目录 (robocopy /MIR)，必须显式确认"""
    if confirm_token is None:
        console.print(Panel(f"[bold red]镜像会删除 {destination} 中源目录不存在的所有文件[/bold red]"))
        confirm_token = Prompt.ask(f"输入 {MIRROR_CONFIRMATION_TOKEN} 确认", default="")
    spec = TransferSpec(
        source=source,
        destination=destination,
        mode=TransferMode.MIRROR,
        acl_mode=AclMode((state.acl or state.config.acl_mode).lower()),
        tuning=current_tuning(),
        label="mirror",
        mirror_confirmation=confirm_token,
        mirror_scope=destination,
    )
    result = make_invoker().invoke(spec, transfer_log_path(state.log_root / "transfers", "mirror"))
    if result.rejected:
        console.print("[red]镜像已取消：未确认[/red]")
        raise typer.Exit(code=1)
    console.print(f"退出码 {result.exit_code}: {explain(result.exit_code)}")
    if is_fatal(result.exit_code):
        raise typer.Exit(code=1)


@app.command("manifest-show")
def manifest_show(
    path: Optional[Path] = typer.Argument(None, help="捕获清单路径，默认为状态存储中的清单"),
):
    """查看捕获清单"""
    manifest_path = path or Path(state.store or state.config.state_store) / MANIFEST_FILE_NAME
    try:
        manifest = read_manifest(manifest_path)
    except ManifestError as e:
        logger.error(f"{e}，请重新运行 capture")
        raise typer.Exit(code=1)
    table = Table(title=f"捕获清单 {manifest_path}")
    table.add_column("字段", style="cyan")
    table.add_column("值")
    table.add_row("版本", str(manifest.version))
    table.add_row("生成时间", manifest.generated_at.isoformat())
    table.add_row("源计算机", manifest.source_computer)
    table.add_row("身份", "\n".join(manifest.identities))
    console.print(table)


@app.command()
def tune(
    speed: Optional[float] = typer.Option(None, "--speed", help="链路速度 Mbps，默认自动探测"),
    hour: Optional[int] = typer.Option(None, "--hour", help="当前小时，默认取本地时间"),
):
    """显示当前的 robocopy 调优参数"""
    cfg = state.config
    profile = (state.tuning or cfg.tuning_profile).lower()
    throttle = cfg.business_hours_throttle if state.throttle is None else state.throttle
    link_speed = speed if speed is not None else LinkSpeedProbe().speed_mbps()
    current_hour = hour if hour is not None else datetime.now().hour
    try:
        params = compute(profile, link_speed, throttle, current_hour)
    except ValueError as e:
        logger.error(f"无效的调优预设: {e}")
        raise typer.Exit(code=2)
    console.print(
        f"预设 [cyan]{params.profile.value}[/cyan]  链路 {link_speed:.0f} Mbps  "
        f"线程 /MT:{params.thread_count}  包间隔 /IPG:{params.inter_packet_gap_ms}"
    )


@app.command("explain")
def explain_code(code: int = typer.Argument(..., help="robocopy 退出码")):
    """解释 robocopy 退出码"""
    style = "red" if is_fatal(code) else "green"
    console.print(f"[{style}]{code}[/{style}]: {explain(code)}")
    for meaning in describe(code):
        console.print(f"  - {meaning}")


def main():
    """主入口函数"""
    try:
        app()
    except KeyboardInterrupt:
        logger.error("操作已中断")
        sys.exit(130)


if __name__ == "__main__":
    main()

"""
阶段编排模块 - 迁移会话的阶段状态机

阶段顺序：
    inventory -> precopy -> nonsystem(可选) -> capture -> cutover
    -> postlogin(可选) -> provision(可选) -> ancillary(可选)

每个阶段都可以单独重跑（复制和捕获都是幂等的）。阶段函数只返回状态，
不会把异常抛给操作员；只有 TransferSpec/TuningParams 构造违规才会中止会话。
"""
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..config import MigrationConfig
from .ancillary import DRIVE_SCRIPT_NAME, AncillaryCollector, drive_script, write_ancillary_report
from .errors import MigrationError, OperationCancelled, PreconditionError
from .exit_codes import explain, severity
from .hosts import admin_share, join_path, transfer_log_path, validate_host
from .models import (
    MigrationContext,
    StageRun,
    StageStatus,
    TransferMode,
    TransferResult,
    TransferSpec,
    TuningParams,
)
from .parallel import ParallelProfileCopier, aggregate
from .process import ProcessRunner
from .profiles import free_space, list_profiles, measure, write_inventory_report
from .progress import ProgressAggregator
from .robocopy import RobocopyInvoker
from .skip_policy import SkipPolicy
from .telemetry import MANIFEST_FILE_NAME, TELEMETRY_FILE_NAME, TelemetryWriter, new_manifest, read_manifest, write_manifest
from .tuning import TuningAdvisor
from .usmt import ALL_IDENTITIES, EXCLUDE_FILE_NAME, UsmtRunner, identity_for_profile, write_exclude_xml

STAGE_ORDER = [
    "inventory",
    "precopy",
    "nonsystem",
    "capture",
    "cutover",
    "postlogin",
    "provision",
    "ancillary",
]
OPTIONAL_STAGES = {"nonsystem", "postlogin", "provision", "ancillary"}

StageOutcome = Tuple[StageStatus, str]

_STATUS_RANK = {StageStatus.OK: 0, StageStatus.WARN: 1, StageStatus.ERROR: 2}


def worst(*statuses: StageStatus) -> StageStatus:
    return max(statuses, key=lambda s: _STATUS_RANK.get(s, 0))


def _never_confirm(message: str) -> bool:
    return False


class StageSequencer:
    """迁移阶段编排器"""

    def __init__(
        self,
        context: MigrationContext,
        config: Optional[MigrationConfig] = None,
        invoker: Optional[RobocopyInvoker] = None,
        usmt: Optional[UsmtRunner] = None,
        ancillary: Optional[AncillaryCollector] = None,
        advisor: Optional[TuningAdvisor] = None,
        progress: Optional[ProgressAggregator] = None,
        telemetry: Optional[TelemetryWriter] = None,
        confirm: Callable[[str], bool] = _never_confirm,
        script_runner: Optional[ProcessRunner] = None,
    ):
        self.context = context
        self.config = config or MigrationConfig()
        # 所有外部进程共用一个 runner，cancel() 才能一次终止全部子进程
        self.process_runner = ProcessRunner(encoding=self.config.console_encoding)
        self.invoker = invoker or RobocopyInvoker(
            runner=self.process_runner,
            executable=self.config.robocopy_exe,
            retries=self.config.robocopy_retries,
            wait_seconds=self.config.robocopy_wait_seconds,
        )
        self.usmt = usmt or UsmtRunner(
            self.config.usmt_dir,
            runner=self.process_runner,
            capture_prefix=self.config.capture_prefix,
            restore_prefix=self.config.restore_prefix,
        )
        self.ancillary_collector = ancillary or AncillaryCollector(runner=self.process_runner)
        self.advisor = advisor or TuningAdvisor()
        self.progress = progress or ProgressAggregator()
        self.telemetry = telemetry or TelemetryWriter(Path(context.log_root) / TELEMETRY_FILE_NAME)
        self.confirm = confirm
        self.script_runner = script_runner or self.process_runner
        self.copier = ParallelProfileCopier(self.invoker, self.progress)
        self.skip_policy = SkipPolicy.cloud_placeholders(enabled=context.skip_onedrive)
        self.cancelled = False

    def cancel(self) -> None:
        """操作员中断：终止正在运行的子进程，当前阶段记为取消，后续阶段跳过

        可以从任意线程调用（界面线程收到 Ctrl+C 时调用）。
        """
        logger.warning("收到中断请求，正在终止外部进程")
        self.cancelled = True
        self.process_runner.cancel()

    # ---- 路径 ----

    @property
    def transfer_log_root(self) -> Path:
        return Path(self.context.log_root) / "transfers"

    @property
    def report_root(self) -> Path:
        return Path(self.context.log_root) / "reports"

    @property
    def source_users(self) -> str:
        return admin_share(self.context.source_host, "Users")

    @property
    def destination_users(self) -> str:
        return admin_share(self.context.destination_host, "Users")

    @property
    def manifest_path(self) -> Path:
        return Path(join_path(self._state_store(), MANIFEST_FILE_NAME))

    # ---- 前置条件 ----

    def validate_hosts(self) -> None:
        """检查源和目标的管理共享，失败抛出 PreconditionError"""
        validate_host(self.context.source_host)
        validate_host(self.context.destination_host)
        self.context.hosts_validated = True

    def _require_hosts(self) -> None:
        if not self.context.hosts_validated:
            self.validate_hosts()

    def _require_profiles(self) -> List[str]:
        if not self.context.profiles:
            raise PreconditionError("没有选中任何用户配置文件")
        return list(self.context.profiles)

    def _state_store(self) -> str:
        store = self.context.state_store or self.config.state_store
        if not store:
            raise PreconditionError("未配置 USMT 状态存储路径")
        return store

    # ---- 通用 ----

    def _tuning(self) -> TuningParams:
        return self.advisor.advise(self.context.tuning_profile, self.context.business_hours_throttle)

    def _run_stage(self, stage_id: str, body: Callable[[], StageOutcome]) -> StageRun:
        run = StageRun(stage_id=stage_id, status=StageStatus.RUNNING, started_at=datetime.now())
        self.progress.set_progress(stage_id, 0)
        logger.info(f"[{stage_id}] 阶段开始")
        try:
            run.status, run.detail = body()
        except OperationCancelled as e:
            self.cancelled = True
            run.status, run.detail = StageStatus.ERROR, f"操作员取消: {e}"
        except (MigrationError, OSError) as e:
            run.status, run.detail = StageStatus.ERROR, str(e)
        run.finished_at = datetime.now()
        self.progress.set_progress(stage_id, 100)

        self.context.record_stage(run)
        self.telemetry.record(run)
        message = f"[{stage_id}] {run.status.value}: {run.detail}"
        if run.status == StageStatus.ERROR:
            logger.error(message)
        elif run.status == StageStatus.WARN:
            logger.warning(message)
        else:
            logger.info(message)
        return run

    def _stage_progress(self, stage_id: str) -> Callable[[float], None]:
        return lambda percent: self.progress.set_progress(stage_id, min(percent, 99))

    def _skip(self, stage_id: str, reason: str) -> StageRun:
        now = datetime.now()
        run = StageRun(stage_id=stage_id, status=StageStatus.SKIPPED, detail=reason, started_at=now, finished_at=now)
        self.context.record_stage(run)
        self.telemetry.record(run)
        logger.info(f"[{stage_id}] 跳过: {reason}")
        return run

    def _single_outcome(self, result: TransferResult) -> StageOutcome:
        """单次传输阶段：致命退出码中止本阶段"""
        if result.cancelled:
            self.cancelled = True
        level = severity(result.exit_code)
        detail = f"退出码 {result.exit_code}: {explain(result.exit_code)} (日志 {result.log_path})"
        if result.rejected:
            detail = "传输被拒绝: " + detail
        if level == "error":
            return StageStatus.ERROR, detail
        if level == "warn":
            return StageStatus.WARN, detail
        return StageStatus.OK, detail

    def _profile_template(self, mode: TransferMode, stage_id: str) -> TransferSpec:
        return TransferSpec(
            source=self.source_users,
            destination=self.destination_users,
            mode=mode,
            # 云占位目录按名称排除，配置文件内的子路径由复制器按配置文件锚定
            exclude_dirs=set(self.skip_policy.robocopy_exclude_dirs()),
            exclude_files=set(self.config.profile_exclude_files),
            acl_mode=self.context.acl_mode,
            tuning=self._tuning(),
            label=stage_id,
        )

    def _copy_profiles(self, stage_id: str, mode: TransferMode) -> Tuple[StageOutcome, Dict[str, TransferResult]]:
        profiles = self._require_profiles()
        results = self.copier.copy_profiles(
            profiles,
            self._profile_template(mode, stage_id),
            concurrency_limit=self.context.concurrency_limit,
            stage=stage_id,
            log_root=self.transfer_log_root,
            profile_exclude_dirs=self.config.profile_exclude_dirs,
        )
        if any(r.cancelled for r in results.values()):
            self.cancelled = True
        return aggregate(results), results

    # ---- 阶段 ----

    def inventory(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            names = self.context.profiles or list_profiles(self.source_users)
            infos = [measure(join_path(self.source_users, name)) for name in names]
            destination_free = free_space(admin_share(self.context.destination_host))
            paths = write_inventory_report(self.report_root, self.context.source_host, infos, destination_free)
            total = sum(i.size_bytes for i in infos)
            errors = sum(i.error_count for i in infos)
            detail = f"{len(infos)} 个配置文件, 共 {total} 字节, 报告 {paths['text']}"
            if errors or (destination_free is not None and destination_free < total):
                return StageStatus.WARN, detail + f", 读取错误 {errors} 个"
            return StageStatus.OK, detail

        return self._run_stage("inventory", body)

    def precopy(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            outcome, _ = self._copy_profiles("precopy", TransferMode.BULK_COPY)
            return outcome

        return self._run_stage("precopy", body)

    def post_login_delta(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            outcome, _ = self._copy_profiles("postlogin", TransferMode.DELTA)
            return outcome

        return self._run_stage("postlogin", body)

    def nonsystem_copy(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            source = admin_share(self.context.source_host)
            # 系统目录只在卷根排除，数据目录下的同名文件夹照常复制
            system_dirs = {join_path(source, name) for name in self.config.system_exclude_dirs}
            spec = TransferSpec(
                source=source,
                destination=admin_share(self.context.destination_host),
                mode=TransferMode.BULK_COPY,
                exclude_dirs=system_dirs | set(self.skip_policy.robocopy_exclude_dirs()),
                exclude_files=set(self.config.system_exclude_files),
                acl_mode=self.context.acl_mode,
                tuning=self._tuning(),
                label="nonsystem",
            )
            result = self.invoker.invoke(
                spec,
                transfer_log_path(self.transfer_log_root, "nonsystem"),
                on_progress=self._stage_progress("nonsystem"),
            )
            return self._single_outcome(result)

        return self._run_stage("nonsystem", body)

    def capture_baseline(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            store = self._state_store()
            if self.context.usmt.capture_all:
                identities = [ALL_IDENTITIES]
            else:
                identities = [identity_for_profile(p) for p in self._require_profiles()]

            exclude_xml = None
            if self.skip_policy.enabled:
                exclude_xml = write_exclude_xml(Path(join_path(store, EXCLUDE_FILE_NAME)), ["OneDrive*"])

            captured, failed = [], []
            for identity in identities:
                log_path = transfer_log_path(self.transfer_log_root, "capture", identity)
                self.progress.set_progress(f"capture:{identity}", 0)
                code = self.usmt.capture(identity, store, self.context.usmt, log_path, exclude_xml)
                self.progress.set_progress(f"capture:{identity}", 100)
                if code == 0:
                    captured.append(identity)
                else:
                    # 单个身份失败只警告，继续下一个
                    logger.warning(f"scanstate {identity} 失败，退出码 {code}")
                    failed.append(f"{identity} (退出码 {code})")

            if not captured:
                return StageStatus.ERROR, "没有任何身份捕获成功: " + ", ".join(failed)

            write_manifest(self.manifest_path, new_manifest(captured, self.context.source_host))
            detail = f"已捕获 {len(captured)}/{len(identities)} 个身份, 清单 {self.manifest_path}"
            if failed:
                return StageStatus.WARN, detail + "; 失败: " + ", ".join(failed)
            return StageStatus.OK, detail

        return self._run_stage("capture", body)

    def spot_check(self, profiles: Iterable[str]) -> List[str]:
        """返回缺失的配置文件子路径"""
        missing = []
        for profile in profiles:
            for sub in self.config.spot_check_subpaths:
                path = join_path(self.destination_users, profile, *sub.split("\\"))
                if not os.path.exists(path):
                    missing.append(path)
        return missing

    def cutover(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            profiles = self._require_profiles()
            (delta_status, delta_detail), _ = self._copy_profiles("cutover", TransferMode.DELTA)

            manifest = read_manifest(self.manifest_path)
            store = self._state_store()
            restore_failures = []
            for identity in manifest.identities:
                log_path = transfer_log_path(self.transfer_log_root, "restore", identity)
                code = self.usmt.restore(identity, store, self.context.usmt, log_path)
                if code != 0:
                    restore_failures.append(f"{identity} (退出码 {code})")

            missing = self.spot_check(profiles)
            parts = [f"增量: {delta_detail}"]
            if restore_failures:
                parts.append("还原失败: " + ", ".join(restore_failures))
            if missing:
                parts.append("缺失: " + ", ".join(missing))
            detail = "; ".join(parts)

            if restore_failures:
                return StageStatus.ERROR, detail
            if missing:
                return StageStatus.WARN, detail
            return worst(StageStatus.OK, delta_status), detail

        return self._run_stage("cutover", body)

    def post_provision_pack(self) -> StageRun:
        def body() -> StageOutcome:
            self._require_hosts()
            if not self.config.provisioning_source:
                raise PreconditionError("未配置 provisioning_source")
            target = admin_share(self.context.destination_host, self.config.provisioning_target_dir)
            spec = TransferSpec(
                source=self.config.provisioning_source,
                destination=target,
                mode=TransferMode.BULK_COPY,
                acl_mode=self.context.acl_mode,
                tuning=self._tuning(),
                label="provision",
            )
            result = self.invoker.invoke(
                spec,
                transfer_log_path(self.transfer_log_root, "provision"),
                on_progress=self._stage_progress("provision"),
            )
            status, detail = self._single_outcome(result)
            if status == StageStatus.ERROR:
                return status, detail

            script = join_path(target, self.config.provisioning_script)
            if not os.path.exists(script):
                return status, detail + "; 未找到配置脚本"
            if not self.confirm(f"在目标机器上运行配置脚本 {script}？"):
                return status, detail + "; 操作员未确认，未运行配置脚本"

            if self.config.restore_prefix:
                local_script = f"C:\\{self.config.provisioning_target_dir}\\{self.config.provisioning_script}"
                args = self.config.restore_prefix + ["cmd.exe", "/c", local_script]
            else:
                args = ["cmd.exe", "/c", script]
            log_path = transfer_log_path(self.transfer_log_root, "provision-script")
            try:
                code = self.script_runner.run(args, log_path=log_path)
            except FileNotFoundError as e:
                return StageStatus.WARN, detail + f"; 无法运行配置脚本: {e}"
            if code != 0:
                return StageStatus.WARN, detail + f"; 配置脚本退出码 {code}"
            return status, detail + "; 配置脚本已运行"

        return self._run_stage("provision", body)

    def ancillary(self) -> StageRun:
        def body() -> StageOutcome:
            # 附属迁移的失败从不影响整个会话，一律降级为警告
            try:
                self._require_hosts()
                report = self.ancillary_collector.collect(self.context.source_host, list(self.context.profiles))
            except OperationCancelled:
                raise
            except (MigrationError, OSError) as e:
                return StageStatus.WARN, f"附属迁移未完成: {e}"
            for profile, drives in report.mapped_drives.items():
                if not drives:
                    continue
                desktop = join_path(self.destination_users, profile, "Desktop")
                try:
                    os.makedirs(desktop, exist_ok=True)
                    with open(join_path(desktop, DRIVE_SCRIPT_NAME), "w", encoding="utf-8", newline="") as f:
                        f.write(drive_script(drives))
                except OSError as e:
                    report.warnings.append(f"{profile}: 写入驱动器脚本失败: {e}")
            path = write_ancillary_report(self.report_root, self.context.source_host, report)
            drive_total = sum(len(d) for d in report.mapped_drives.values())
            detail = f"映射驱动器 {drive_total} 个, ODBC 数据源 {len(report.dsns)} 个 (仅报告), 报告 {path}"
            if report.warnings:
                return StageStatus.WARN, detail + "; " + "; ".join(report.warnings)
            return StageStatus.OK, detail

        return self._run_stage("ancillary", body)

    # ---- 整体流程 ----

    def stage_methods(self) -> Dict[str, Callable[[], StageRun]]:
        return {
            "inventory": self.inventory,
            "precopy": self.precopy,
            "nonsystem": self.nonsystem_copy,
            "capture": self.capture_baseline,
            "cutover": self.cutover,
            "postlogin": self.post_login_delta,
            "provision": self.post_provision_pack,
            "ancillary": self.ancillary,
        }

    def run_stage(self, stage_id: str) -> StageRun:
        methods = self.stage_methods()
        if stage_id not in methods:
            raise ValueError(f"未知阶段: {stage_id}")
        return methods[stage_id]()

    def run_all(self, include_optional: Iterable[str] = ()) -> List[StageRun]:
        """按顺序运行所有阶段；出现 ERROR 或操作员取消后，剩余阶段记为跳过"""
        include = set(include_optional)
        runs = []
        halted = ""
        for stage_id in STAGE_ORDER:
            if halted:
                runs.append(self._skip(stage_id, halted))
                continue
            if stage_id in OPTIONAL_STAGES and stage_id not in include:
                runs.append(self._skip(stage_id, "未选择"))
                continue
            run = self.run_stage(stage_id)
            runs.append(run)
            if self.cancelled:
                halted = f"操作员在 {stage_id} 阶段取消"
            elif run.status == StageStatus.ERROR:
                halted = f"{stage_id} 阶段失败"
        return runs

"""
ApplyExecutor - runs a frozen TuningPlan against the host.

Three modes:
1. APPLY   - back up every generated path, then perform each effect
2. DRY_RUN - print what would be written or run, touch nothing
3. REPORT  - print the full content of every generated file, touch nothing

Each effect yields a tri-state EffectResult. A missing sysfs node or
missing binary is NOT_APPLICABLE; a rejected write or non-zero exit is
FAILED and the run continues with the next effect.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..discovery.host import DEFAULT_COMMAND_TIMEOUT, CommandRunner, HostFS
from ..protocol.errors import ApplyFailure, PlanFrozenError
from ..protocol.plan import Effect, EffectKind, TuningPlan
from ..protocol.result import ApplyReport, EffectResult, EffectStatus
from ..snapshot.manager import BackupHandle, BackupManager

logger = logging.getLogger(__name__)

REPORT_BANNER = "=" * 80


class ExecutionMode(str, Enum):
    APPLY = "apply"
    DRY_RUN = "dry-run"
    REPORT = "report"


# Per-program timeouts; everything else gets ExecutorConfig.command_timeout
FAST_COMMANDS = ("ethtool", "ip")
SLOW_COMMANDS = ("update-grub", "fstrim")


@dataclass
class ExecutorConfig:
    """Configuration for the apply executor."""
    command_timeout: float = 30.0
    fast_timeout: float = DEFAULT_COMMAND_TIMEOUT
    slow_timeout: float = 120.0

    def timeout_for(self, program: str) -> float:
        if program in FAST_COMMANDS:
            return self.fast_timeout
        if program in SLOW_COMMANDS:
            return self.slow_timeout
        return self.command_timeout


class ApplyExecutor:
    """
    Performs plan effects in order.

    The optional `ui` receives dry-run lines, report blocks and per-effect
    results; without one everything goes to the log.
    """

    def __init__(
        self,
        fs: HostFS,
        runner: Optional[CommandRunner] = None,
        backups: Optional[BackupManager] = None,
        config: Optional[ExecutorConfig] = None,
        ui=None,
    ):
        self.fs = fs
        self.config = config or ExecutorConfig()
        self.runner = runner or CommandRunner(timeout=self.config.command_timeout)
        self.backups = backups
        self.ui = ui
        self._backup: Optional[BackupHandle] = None

    # =========================================================================
    # Entry point
    # =========================================================================

    def apply(self, plan: TuningPlan, mode: ExecutionMode) -> ApplyReport:
        """
        Execute every effect of a frozen plan.

        Raises:
            PlanFrozenError: the plan is still mutable
        """
        if not plan.frozen:
            raise PlanFrozenError(f"{plan.tool} plan must be frozen before execution")

        report = ApplyReport(mode=mode.value)

        if mode == ExecutionMode.APPLY and self.backups is not None:
            self._backup = self.backups.begin_backup()
            for path in plan.file_targets():
                self._backup.snapshot(path)
            report.backup_dir = str(self._backup.directory)

        for effect in plan.effects:
            if mode == ExecutionMode.APPLY:
                result = self._perform(effect)
            elif mode == ExecutionMode.DRY_RUN:
                result = self._dry_run(effect)
            else:
                result = self._report(effect)
            report.add(result)
            self._show_result(result)
        logger.info("%s %s: %s", plan.tool, mode.value, report.summary())
        return report

    # =========================================================================
    # APPLY
    # =========================================================================

    def _perform(self, effect: Effect) -> EffectResult:
        try:
            if effect.kind == EffectKind.SCALAR:
                return self._write_scalar(effect)
            if effect.kind in (EffectKind.FILE_WRITE, EffectKind.FILE_APPEND):
                return self._write_file(effect)
            return self._run_command(effect)
        except ApplyFailure as e:
            return EffectResult(effect.kind.value, e.target, EffectStatus.FAILED, e.reason)

    def _write_scalar(self, effect: Effect) -> EffectResult:
        """
        Raises:
            ApplyFailure: the kernel rejected the value
        """
        if not self.fs.exists(effect.target):
            return EffectResult(effect.kind.value, effect.target, EffectStatus.NOT_APPLICABLE,
                                "node not present")
        try:
            with open(self.fs.path(effect.target), 'w') as f:
                f.write(effect.value + "\n")
        except OSError as e:
            raise ApplyFailure(effect.target,
                               f"write '{effect.value}' rejected: {e.strerror or e}") from e
        return EffectResult(effect.kind.value, effect.target, EffectStatus.OK, effect.value)

    def _write_file(self, effect: Effect) -> EffectResult:
        target = self.fs.path(effect.target)
        if self._backup is not None:
            self._backup.snapshot(effect.target)
        mode = 'a' if effect.kind == EffectKind.FILE_APPEND else 'w'
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, mode) as f:
                f.write(effect.value)
        except OSError as e:
            raise ApplyFailure(effect.target, str(e.strerror or e)) from e
        return EffectResult(effect.kind.value, effect.target, EffectStatus.OK,
                            effect.label or "written")

    def _run_command(self, effect: Effect) -> EffectResult:
        command = effect.describe()
        result = self.runner.run(effect.argv, timeout=self.config.timeout_for(effect.argv[0]))
        if result.missing:
            return EffectResult(effect.kind.value, command, EffectStatus.NOT_APPLICABLE,
                                f"{effect.argv[0]} not installed")
        if not result.ok:
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise ApplyFailure(command, f"exit {result.returncode}: {detail[-1] if detail else ''}",
                               returncode=result.returncode)
        return EffectResult(effect.kind.value, command, EffectStatus.OK, effect.label)

    # =========================================================================
    # DRY_RUN / REPORT
    # =========================================================================

    def _dry_run(self, effect: Effect) -> EffectResult:
        if effect.kind == EffectKind.SCALAR:
            line = f"[DRY-RUN] write {effect.target} <= {effect.value}"
        elif effect.kind == EffectKind.FILE_WRITE:
            line = f"[DRY-RUN] write file: {effect.target}"
        elif effect.kind == EffectKind.FILE_APPEND:
            line = f"[DRY-RUN] append file: {effect.target}"
        else:
            line = f"[DRY-RUN] {effect.describe()}"
        self._emit(line)
        return EffectResult(effect.kind.value, effect.describe(), EffectStatus.SKIPPED, "dry-run")

    def _report(self, effect: Effect) -> EffectResult:
        if effect.kind in (EffectKind.FILE_WRITE, EffectKind.FILE_APPEND):
            heading = ("RECOMMENDED APPEND" if effect.kind == EffectKind.FILE_APPEND
                       else "RECOMMENDED FILE")
            block = "\n".join([REPORT_BANNER, f"{heading}: {effect.target}", REPORT_BANNER,
                               effect.value.rstrip("\n"), ""])
            if self.ui is not None:
                self.ui.report_block(block)
            else:
                logger.info("\n%s", block)
        return EffectResult(effect.kind.value, effect.describe(), EffectStatus.SKIPPED, "report")

    # =========================================================================
    # Output
    # =========================================================================

    def _emit(self, line: str):
        if self.ui is not None:
            self.ui.dry_run(line)
        else:
            logger.info(line)

    def _show_result(self, result: EffectResult):
        if result.status == EffectStatus.SKIPPED:
            return
        if self.ui is not None:
            self.ui.effect_result(result)
        elif result.status == EffectStatus.FAILED:
            logger.warning("%s: %s", result.target, result.detail)
        else:
            logger.debug("%s: %s %s", result.target, result.status.value, result.detail)

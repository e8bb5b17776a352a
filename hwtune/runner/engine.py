"""
TuningEngine - orchestrates one run of network-optimize or system-optimize.

Apply / dry-run / report:
    DETECT → RESOLVE → DERIVE → PREFLIGHT → APPLY → PERSIST → COMPLETE
Verify:
    saved plan (or DETECT → RESOLVE → DERIVE) → VERIFY → COMPLETE
Cleanup:
    PREFLIGHT → CLEANUP → COMPLETE

Only APPLY mode and a real cleanup take the run lock and touch the host.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from ..discovery.host import CommandRunner, HostFS, DEFAULT_COMMAND_TIMEOUT
from ..discovery.cloud import MetadataClient
from ..discovery.system import CollectorConfig, FactCollector
from ..protocol.errors import ValidationError
from ..protocol.facts import HardwareFacts
from ..protocol.plan import TuningPlan
from ..protocol.result import ApplyReport, DriftReport
from ..snapshot.lock import DEFAULT_LOCK_DIR, RunLock
from ..snapshot.manager import DEFAULT_BACKUP_ROOT, BackupManager
from ..snapshot.models import CleanupEntry, RestoreAction
from ..tuning import preflight
from ..tuning.artifacts import GENERATED_FILES, GRUB_DEFAULT, SERVICE_UNITS
from ..tuning.executor import ApplyExecutor, ExecutionMode, ExecutorConfig
from ..tuning.network import derive_network_plan
from ..tuning.profiles import Profile, TuningFlags, resolve_profile
from ..tuning.system import derive_system_plan, probed_services
from ..tuning.verifier import DriftVerifier
from .state import State, StateMachine

logger = logging.getLogger(__name__)

DERIVERS: Dict[str, Callable[[HardwareFacts, Profile, TuningFlags], TuningPlan]] = {
    "network": derive_network_plan,
    "system": derive_system_plan,
}

DEFAULT_STATE_DIR = "/var/lib/hwtune"


class RunAction:
    APPLY = "apply"
    VERIFY = "verify"
    CLEANUP = "cleanup"


@dataclass
class EngineConfig:
    """Configuration for one tuning run."""
    tool: str = "network"
    action: str = RunAction.APPLY
    mode: ExecutionMode = ExecutionMode.APPLY
    profile: str = "auto"
    flags: TuningFlags = field(default_factory=TuningFlags)
    assume_yes: bool = False
    restore_from: Optional[str] = None

    # Paths (absolute host paths, joined to root)
    root: Union[str, Path] = "/"
    backup_root: str = DEFAULT_BACKUP_ROOT
    state_dir: str = DEFAULT_STATE_DIR
    lock_dir: str = DEFAULT_LOCK_DIR

    # Probing
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    metadata_timeout: float = 1.0
    use_metadata: bool = True


@dataclass
class RunResult:
    """Everything a run produced; the CLI renders it."""
    tool: str
    action: str
    profile: Optional[Profile] = None
    facts: Optional[HardwareFacts] = None
    plan: Optional[TuningPlan] = None
    report: Optional[ApplyReport] = None
    drift: Optional[DriftReport] = None
    cleanup: List[CleanupEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    plan_path: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.drift is not None:
            return self.drift.exit_code
        return 0


class TuningEngine:
    """
    Main orchestrator.

    Components are injectable: tests pass a fake root tree through the
    config, a recording CommandRunner and a stubbed MetadataClient.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        ui=None,
        runner: Optional[CommandRunner] = None,
        apply_runner: Optional[CommandRunner] = None,
        metadata: Optional[MetadataClient] = None,
        privilege_check: Callable[[str], None] = preflight.check_privileges,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.config = config or EngineConfig()
        if self.config.tool not in DERIVERS:
            raise ValidationError(f"Unknown tool: {self.config.tool}")
        self.ui = ui
        self.fs = HostFS(self.config.root)
        self.runner = runner or CommandRunner(timeout=self.config.command_timeout)
        self.apply_runner = apply_runner or CommandRunner(timeout=ExecutorConfig().command_timeout)
        self.metadata = metadata
        self.privilege_check = privilege_check
        self.which = which
        self.state_machine = StateMachine()
        self.backups = BackupManager(self.fs, self.config.tool, self.config.backup_root)

    @property
    def plan_path(self) -> str:
        """Host path of the persisted plan."""
        return f"{self.config.state_dir.rstrip('/')}/{self.config.tool}-optimize-plan.json"

    @property
    def apply_mode(self) -> bool:
        return self.config.mode == ExecutionMode.APPLY

    # =========================================================================
    # Entry point
    # =========================================================================

    def run(self) -> RunResult:
        """
        Run the configured action.

        Raises:
            ValidationError, PlatformUnsupported, CongestionUnavailable,
            LockHeldError: fatal problems, before anything is mutated
        """
        result = RunResult(tool=self.config.tool, action=self.config.action)
        try:
            if self.config.action == RunAction.CLEANUP:
                self._cleanup(result)
            elif self.config.action == RunAction.VERIFY:
                self._verify(result)
            else:
                self._apply(result)
            self._transition(State.COMPLETE)
        except Exception as e:
            self.state_machine.fail(str(e))
            raise
        finally:
            logger.debug("run phases:\n%s", self.state_machine.format_history())
        return result

    def _transition(self, to_state: State, metadata: Optional[Dict] = None):
        self.state_machine.transition(to_state, metadata)

    def _warn(self, result: RunResult, warnings: List[str]):
        for message in warnings:
            result.warnings.append(message)
            logger.warning(message)
            if self.ui is not None:
                self.ui.warning(message)

    # =========================================================================
    # Phases
    # =========================================================================

    def _detect(self, result: RunResult) -> HardwareFacts:
        self._transition(State.DETECT)
        collector = FactCollector(
            config=CollectorConfig(
                root=self.config.root,
                command_timeout=self.config.command_timeout,
                metadata_timeout=self.config.metadata_timeout,
                use_metadata=self.config.use_metadata,
                services=probed_services() if self.config.tool == "system" else (),
            ),
            runner=self.runner,
            metadata=self.metadata,
        )
        result.facts = collector.collect()
        self._warn(result, [f"Detection incomplete ({failure}); using defaults"
                            for failure in collector.failures])
        return result.facts

    def _resolve(self, result: RunResult, facts: HardwareFacts) -> Profile:
        self._transition(State.RESOLVE)
        result.profile = resolve_profile(self.config.profile, facts)
        logger.info("profile: %s", result.profile.value)
        return result.profile

    def _derive(self, result: RunResult, facts: HardwareFacts, profile: Profile,
                flags: TuningFlags) -> TuningPlan:
        self._transition(State.DERIVE)
        result.plan = DERIVERS[self.config.tool](facts, profile, flags)
        return result.plan

    def _confirm(self, danger: preflight.DangerousFlag) -> bool:
        if self.ui is None:
            logger.warning("--%s needs confirmation; no terminal, declining", danger.option)
            return False
        return self.ui.confirm_danger(danger)

    # =========================================================================
    # Apply / dry-run / report
    # =========================================================================

    def _apply(self, result: RunResult):
        flags = self.config.flags
        preflight.validate_inputs(flags)
        if self.apply_mode:
            self.privilege_check(self.config.tool)

        facts = self._detect(result)
        profile = self._resolve(result, facts)

        if self.apply_mode:
            flags = preflight.confirm_dangerous_flags(flags, self._confirm, self.config.assume_yes)
        plan = self._derive(result, facts, profile, flags)
        if self.ui is not None and self.config.mode != ExecutionMode.REPORT:
            self.ui.print_facts(facts, profile.value)
            self.ui.print_params(plan)

        self._transition(State.PREFLIGHT)
        self._warn(result, preflight.check_distro(facts, self.apply_mode))
        if self.config.tool == "network":
            self._warn(result, preflight.check_congestion(
                facts, plan.param("congestion"), self.apply_mode))
        if self.apply_mode:
            self._warn(result, preflight.check_environment(self.fs, self.which))

        self._transition(State.APPLY, {"mode": self.config.mode.value})
        if not self.apply_mode:
            result.report = self._executor(backups=None).apply(plan, self.config.mode)
            return

        with RunLock(self.fs, self.config.tool, self.config.lock_dir):
            result.report = self._executor(backups=self.backups).apply(
                plan, ExecutionMode.APPLY)
            self._transition(State.PERSIST)
            plan.save(self.fs.path(self.plan_path))
            result.plan_path = self.plan_path
            logger.info("plan saved: %s", self.plan_path)

    def _executor(self, backups: Optional[BackupManager]) -> ApplyExecutor:
        config = ExecutorConfig()
        return ApplyExecutor(
            self.fs,
            runner=self.apply_runner,
            backups=backups,
            config=config,
            ui=self.ui,
        )

    # =========================================================================
    # Verify
    # =========================================================================

    def _verify(self, result: RunResult):
        plan = TuningPlan.load_optional(self.fs.path(self.plan_path))
        if plan is None:
            logger.info("No saved plan at %s; deriving from current facts", self.plan_path)
            preflight.validate_inputs(self.config.flags)
            facts = self._detect(result)
            profile = self._resolve(result, facts)
            plan = self._derive(result, facts, profile, self.config.flags)
        else:
            result.plan = plan
            result.profile = Profile(plan.profile)

        self._transition(State.VERIFY)
        result.drift = DriftVerifier(self.fs).verify(plan)

    # =========================================================================
    # Cleanup
    # =========================================================================

    def _cleanup(self, result: RunResult):
        self._transition(State.PREFLIGHT)
        restore_dir = None
        if self.config.restore_from:
            restore_dir = Path(self.config.restore_from)
            if not restore_dir.is_absolute():
                restore_dir = restore_dir.resolve()
            if not restore_dir.is_dir():
                raise ValidationError(f"Backup directory not found: {self.config.restore_from}")

        dry_run = not self.apply_mode
        if dry_run:
            self._run_cleanup(result, restore_dir, dry_run)
            return

        self.privilege_check(self.config.tool)
        with RunLock(self.fs, self.config.tool, self.config.lock_dir):
            self._run_cleanup(result, restore_dir, dry_run)

    def _run_cleanup(self, result: RunResult, restore_dir: Optional[Path], dry_run: bool):
        self._transition(State.CLEANUP, {"dry_run": dry_run})
        tool = self.config.tool
        paths = list(GENERATED_FILES[tool]) + [self.plan_path]
        result.cleanup = self.backups.cleanup(
            paths, restore_dir, dry_run=dry_run, restore_only=(GRUB_DEFAULT,))

        post = TuningPlan(tool=tool, profile="cleanup")
        grub_restored = any(e.path == GRUB_DEFAULT and e.action == RestoreAction.RESTORED
                            for e in result.cleanup)
        if grub_restored:
            post.run("update-grub", label="regenerate grub.cfg")
        unit = SERVICE_UNITS[tool]
        if self.runner.run(["systemctl", "is-enabled", "--quiet", unit]).ok:
            post.run("systemctl", "disable", unit)
        post.run("systemctl", "daemon-reload")
        post.run("sysctl", "--system", label="reload sysctl")
        post.freeze()

        mode = ExecutionMode.DRY_RUN if dry_run else ExecutionMode.APPLY
        result.report = self._executor(backups=None).apply(post, mode)

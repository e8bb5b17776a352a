"""
End-to-end tests for TuningEngine against a fake root tree.

The host tree is a real directory; commands go to recording runners and
the privilege check is stubbed, so apply and cleanup run for real inside
tmp_path.
"""

import pytest

from hwtune.protocol.errors import (
    CongestionUnavailable,
    LockHeldError,
    PlatformUnsupported,
    ValidationError,
)
from hwtune.protocol.result import DriftState
from hwtune.runner.engine import EngineConfig, RunAction, TuningEngine
from hwtune.runner.state import State
from hwtune.snapshot.lock import RunLock
from hwtune.snapshot.models import RestoreAction
from hwtune.tuning.artifacts import NETWORK_SERVICE, NETWORK_SYSCTL, sysctl_path
from hwtune.tuning.executor import ExecutionMode
from hwtune.tuning import preflight
from hwtune.tuning.profiles import Profile, TuningFlags
from hwtune.tests.mocks import bare_metal_server

PLAN_PATH = "/var/lib/hwtune/network-optimize-plan.json"


@pytest.fixture
def make_engine(host, probe_runner, apply_runner, metadata):
    def make(tool="network", **overrides):
        config = EngineConfig(tool=tool, root=str(host.root), use_metadata=False, **overrides)
        return TuningEngine(
            config,
            runner=probe_runner,
            apply_runner=apply_runner,
            metadata=metadata,
            privilege_check=lambda tool: None,
            which=lambda name: "/usr/bin/" + name,
        )
    return make


def files_only(digest):
    return {path: value for path, value in digest.items() if value != "dir"}


def sysctl_applied(host, plan):
    """What `sysctl --system` would do with the plan's drop-in."""
    for key, value in plan.sysctl.items():
        if host.path(sysctl_path(key)).exists():
            host.sysctl(key, value)


class TestPreviewRuns:

    @pytest.mark.parametrize("tool", ["network", "system"])
    @pytest.mark.parametrize("mode", [ExecutionMode.DRY_RUN, ExecutionMode.REPORT])
    def test_host_is_untouched(self, host, make_engine, apply_runner, tool, mode):
        before = host.digest()

        result = make_engine(tool, mode=mode).run()

        assert host.digest() == before
        assert apply_runner.calls == []
        assert result.plan_path is None
        assert result.plan.frozen

    def test_dry_run_does_not_need_root(self, make_engine, host, probe_runner, apply_runner,
                                        metadata):
        def refuse(tool):
            raise ValidationError("Run as root")

        engine = TuningEngine(EngineConfig(root=str(host.root), mode=ExecutionMode.DRY_RUN,
                                           use_metadata=False),
                              runner=probe_runner, apply_runner=apply_runner,
                              metadata=metadata, privilege_check=refuse)
        assert engine.run().report is not None

    def test_state_history(self, make_engine):
        engine = make_engine(mode=ExecutionMode.DRY_RUN)
        engine.run()
        states = [event.to_state for event in engine.state_machine.history]
        assert states == [State.DETECT, State.RESOLVE, State.DERIVE, State.PREFLIGHT,
                          State.APPLY, State.COMPLETE]


class TestApplyAndCleanup:

    def test_network_round_trip(self, host, make_engine, apply_runner):
        before = host.digest("/etc")

        applied = make_engine().run()

        assert host.read(NETWORK_SYSCTL).startswith("#")
        assert "net.core.somaxconn" in host.read(NETWORK_SYSCTL)
        assert host.path(NETWORK_SERVICE).is_file()
        assert host.path(PLAN_PATH).is_file()
        assert applied.plan_path == PLAN_PATH
        assert apply_runner.called("sysctl", "--system")
        assert apply_runner.called("systemctl", "enable", "network-optimize.service")

        cleaned = make_engine(action=RunAction.CLEANUP).run()

        assert host.digest("/etc") == before
        assert host.read(NETWORK_SYSCTL) == "# hand-written by the admin\n"
        assert not host.path(PLAN_PATH).exists()
        actions = {e.path: e.action for e in cleaned.cleanup}
        assert actions[NETWORK_SYSCTL] == RestoreAction.RESTORED
        assert actions[NETWORK_SERVICE] == RestoreAction.REMOVED

    def test_system_round_trip(self, host, make_engine):
        before = files_only(host.digest("/etc"))

        make_engine("system").run()
        assert files_only(host.digest("/etc")) != before
        make_engine("system", action=RunAction.CLEANUP).run()

        assert files_only(host.digest("/etc")) == before

    def test_cleanup_twice_is_a_no_op(self, host, make_engine):
        make_engine().run()
        make_engine(action=RunAction.CLEANUP).run()
        once = host.digest("/etc")

        second = make_engine(action=RunAction.CLEANUP).run()

        assert host.digest("/etc") == once
        actions = {e.path: e.action for e in second.cleanup}
        assert actions[NETWORK_SERVICE] == RestoreAction.ABSENT

    def test_reapply_then_cleanup_restores_original(self, host, make_engine):
        before = host.digest("/etc")
        make_engine().run()
        make_engine(flags=TuningFlags(high_throughput=True)).run()

        make_engine(action=RunAction.CLEANUP).run()

        assert host.digest("/etc") == before

    def test_cleanup_disables_enabled_unit(self, make_engine, probe_runner, apply_runner):
        make_engine().run()
        probe_runner.on("systemctl", "is-enabled", returncode=0)

        make_engine(action=RunAction.CLEANUP).run()

        assert apply_runner.called("systemctl", "disable", "network-optimize.service")
        assert apply_runner.calls[-1] == ["sysctl", "--system"]

    def test_dry_run_cleanup(self, host, make_engine, apply_runner):
        make_engine().run()
        before = host.digest()
        calls = len(apply_runner.calls)

        result = make_engine(action=RunAction.CLEANUP, mode=ExecutionMode.DRY_RUN).run()

        assert host.digest() == before
        assert len(apply_runner.calls) == calls
        assert {e.action for e in result.cleanup} >= {RestoreAction.RESTORED}

    def test_restore_from_missing_directory(self, tmp_path, make_engine):
        engine = make_engine(action=RunAction.CLEANUP,
                             restore_from=str(tmp_path / "network-optimize-19990101-000000"))
        with pytest.raises(ValidationError, match="not found"):
            engine.run()
        assert engine.state_machine.state == State.FAILED

    def test_apply_refused_while_locked(self, host, fs, make_engine):
        before = host.digest("/etc")
        with RunLock(fs, "network"):
            with pytest.raises(LockHeldError):
                make_engine().run()
        assert host.digest("/etc") == before


class TestPreflightFailures:

    def test_unsupported_distro_aborts_apply(self, host, make_engine, apply_runner):
        host.os_release("gentoo")
        before = host.digest()

        with pytest.raises(PlatformUnsupported, match="gentoo"):
            make_engine().run()

        assert host.digest() == before
        assert apply_runner.calls == []

    def test_unsupported_distro_warns_in_dry_run(self, host, make_engine):
        host.os_release("gentoo")
        result = make_engine(mode=ExecutionMode.DRY_RUN).run()
        assert any("gentoo" in w for w in result.warnings)

    def test_unavailable_congestion_aborts_apply(self, host, make_engine):
        before = host.digest()
        with pytest.raises(CongestionUnavailable, match="htcp"):
            make_engine(flags=TuningFlags(congestion="htcp")).run()
        assert host.digest() == before

    def test_unavailable_congestion_warns_in_dry_run(self, make_engine):
        result = make_engine(mode=ExecutionMode.DRY_RUN,
                             flags=TuningFlags(congestion="htcp")).run()
        assert any("htcp" in w for w in result.warnings)

    def test_congestion_unchecked_without_available_list(self):
        facts = bare_metal_server(available_congestion=())
        assert preflight.check_congestion(facts, "htcp", apply_mode=True) == []

    def test_missing_etc_directories(self, host, make_engine):
        host.path("/etc/modprobe.d").rmdir()
        with pytest.raises(ValidationError, match="/etc/modprobe.d"):
            make_engine().run()

    def test_invalid_flags_before_probing(self, make_engine, probe_runner):
        with pytest.raises(ValidationError, match="isolate-cpus"):
            make_engine("system", flags=TuningFlags(isolate_cpus="2..5")).run()
        assert probe_runner.calls == []

    def test_unknown_tool(self, make_engine):
        with pytest.raises(ValidationError, match="Unknown tool"):
            make_engine("storage")


class TestVerify:

    def test_verify_after_apply_matches(self, host, make_engine):
        applied = make_engine().run()
        sysctl_applied(host, applied.plan)

        result = make_engine(action=RunAction.VERIFY).run()

        assert result.profile == Profile(applied.plan.profile)
        assert not result.drift.has_drift
        assert result.exit_code == 0

    def test_verify_reports_drift(self, host, make_engine):
        applied = make_engine().run()
        sysctl_applied(host, applied.plan)
        host.sysctl("net.core.somaxconn", 128)
        host.path(NETWORK_SERVICE).unlink()

        result = make_engine(action=RunAction.VERIFY).run()

        states = {e.target: e.state for e in result.drift.entries}
        assert states["net.core.somaxconn"] == DriftState.DRIFT
        assert states[NETWORK_SERVICE] == DriftState.MISSING
        assert result.exit_code == 2

    def test_verify_without_saved_plan_derives(self, host, make_engine):
        before = host.digest()
        result = make_engine(action=RunAction.VERIFY).run()

        assert host.digest() == before
        assert result.plan is not None
        assert result.drift.has_drift

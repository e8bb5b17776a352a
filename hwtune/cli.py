"""
CLI - Command-line interface for hwtune.

    hwtune network [options]     (installed as network-optimize)
    hwtune system [options]      (installed as system-optimize)

Exit codes: 0 success, 1 fatal error, 2 drift found by --verify,
130 interrupted.
"""

import argparse
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import Config
from .protocol.errors import HwtuneError, ValidationError
from .runner.engine import EngineConfig, RunAction, RunResult, TuningEngine
from .tuning.executor import ExecutionMode
from .tuning.profiles import Profile, TuningFlags
from .ui.console import ConsoleUI
from .ui.log import setup_logging

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

NETWORK_EPILOG = """
Examples:
    network-optimize --dry-run
    network-optimize --profile=vm --high-throughput
    network-optimize --low-latency --congestion=cubic
    network-optimize --report > recommended.txt
    network-optimize --verify
    network-optimize --cleanup
    network-optimize --restore-from=/var/backups/network-optimize-20250101-120000

Generated files:
    /etc/sysctl.d/99-network-optimize.conf
    /etc/systemd/system/network-optimize.service
"""

SYSTEM_EPILOG = """
Examples:
    system-optimize --dry-run
    system-optimize --profile=server --disable-services --yes
    system-optimize --profile=latency --isolate-cpus=2-5 --disable-smt
    system-optimize --report
    system-optimize --verify
    system-optimize --cleanup

Generated files:
    /etc/sysctl.d/99-system-optimize.conf
    /etc/security/limits.d/99-system-optimize.conf
    /etc/systemd/{system,user}.conf.d/99-system-optimize.conf
    /etc/systemd/journald.conf.d/99-system-optimize.conf
    /etc/modprobe.d/99-system-optimize-blacklist.conf
    /etc/systemd/system/system-optimize.service
    /etc/default/grub (kernel command line, backed up)
"""


def _add_common(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--profile",
        choices=Profile.choices(),
        default=None,
        help="Tuning profile (default: auto)"
    )
    parser.add_argument(
        "--low-latency",
        action="store_true",
        help="Latency-oriented overrides on top of the profile"
    )

    # ==================== Operation Modes ====================
    mode_group = parser.add_argument_group('Operation Modes')
    mode_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Print every change without applying it"
    )
    mode_group.add_argument(
        "--report",
        action="store_true",
        help="Print the full recommended files (implies --dry-run)"
    )
    actions = mode_group.add_mutually_exclusive_group()
    actions.add_argument(
        "--verify",
        action="store_true",
        help="Compare the last applied plan against the live system (exit 2 on drift)"
    )
    actions.add_argument(
        "--cleanup",
        action="store_true",
        help="Restore backed up files and remove generated ones"
    )
    actions.add_argument(
        "--restore-from",
        metavar="DIR",
        help="Cleanup using a specific backup directory (implies --cleanup)"
    )

    # ==================== General ====================
    general = parser.add_argument_group('General')
    general.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Confirm dangerous options without prompting"
    )
    general.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging, derived parameter table, full drift table"
    )
    general.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Errors only"
    )
    general.add_argument(
        "--config",
        metavar="PATH",
        help="Config file (default: ./hwtune.toml, ~/.config/hwtune/config.toml, "
             "/etc/hwtune/config.toml)"
    )
    general.add_argument(
        "--root",
        metavar="DIR",
        help="Operate on a different filesystem root (chroot images, testing)"
    )
    general.add_argument(
        "--backup-root",
        metavar="DIR",
        help="Backup parent directory (default: /var/backups)"
    )
    general.add_argument(
        "--state-dir",
        metavar="DIR",
        help="Where the applied plan is saved (default: /var/lib/hwtune)"
    )
    general.add_argument(
        "--no-metadata",
        action="store_true",
        help="Do not query cloud metadata services"
    )


def _add_network(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('Network Options')
    group.add_argument(
        "--high-throughput",
        action="store_true",
        help="64MB TCP buffers and doubled softirq budget regardless of profile"
    )
    group.add_argument(
        "--congestion",
        metavar="ALG",
        help="TCP congestion control (default: bbr, cubic with --low-latency)"
    )


def _add_system(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('System Options')
    group.add_argument("--disable-mitigations", action="store_true",
                       help="Disable CPU vulnerability mitigations (confirmation required)")
    group.add_argument("--disable-smt", action="store_true",
                       help="Disable simultaneous multithreading")
    group.add_argument("--isolate-cpus", metavar="RANGE", default="",
                       help="Isolate CPUs from the scheduler (e.g. 2-5 or 1,3,5)")
    group.add_argument("--relax-security", action="store_true",
                       help="Disable audit and relax kernel hardening (confirmation required)")
    group.add_argument("--disable-services", action="store_true",
                       help="Disable non-essential services (confirmation required)")
    group.add_argument("--reclaim-memory", action="store_true",
                       help="Drop caches and compact memory once")
    group.add_argument("--apply-fs-tuning", action="store_true",
                       help="tune2fs reserved blocks, XFS extent hints, fstrim (confirmation required)")


def build_parser() -> argparse.ArgumentParser:
    """Parser with one subcommand per tool."""
    parser = argparse.ArgumentParser(
        prog="hwtune",
        description="Hardware-aware Linux network and system tuning",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="tool", required=True)

    network = sub.add_parser(
        "network",
        help="Network stack tuning (sysctl, NIC rings/queues/offloads, RPS)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=NETWORK_EPILOG,
    )
    _add_common(network)
    _add_network(network)

    system = sub.add_parser(
        "system",
        help="CPU, memory, scheduler, storage and limits tuning",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=SYSTEM_EPILOG,
    )
    _add_common(system)
    _add_system(system)
    return parser


def build_flags(args: argparse.Namespace, config: Config) -> TuningFlags:
    congestion = getattr(args, "congestion", None) or config.defaults.congestion or None
    return TuningFlags(
        high_throughput=getattr(args, "high_throughput", False),
        low_latency=args.low_latency,
        congestion=congestion,
        disable_mitigations=getattr(args, "disable_mitigations", False),
        disable_smt=getattr(args, "disable_smt", False),
        isolate_cpus=getattr(args, "isolate_cpus", ""),
        relax_security=getattr(args, "relax_security", False),
        disable_services=getattr(args, "disable_services", False),
        reclaim_memory=getattr(args, "reclaim_memory", False),
        apply_fs_tuning=getattr(args, "apply_fs_tuning", False),
    )


def build_engine_config(args: argparse.Namespace, config: Config) -> EngineConfig:
    if args.report:
        mode = ExecutionMode.REPORT
    elif args.dry_run:
        mode = ExecutionMode.DRY_RUN
    else:
        mode = ExecutionMode.APPLY

    if args.cleanup or args.restore_from:
        action = RunAction.CLEANUP
    elif args.verify:
        action = RunAction.VERIFY
    else:
        action = RunAction.APPLY

    return EngineConfig(
        tool=args.tool,
        action=action,
        mode=mode,
        profile=config.defaults.profile,
        flags=build_flags(args, config),
        assume_yes=args.yes,
        restore_from=args.restore_from,
        root=config.paths.root,
        backup_root=config.paths.backup_root,
        state_dir=config.paths.state_dir,
        lock_dir=config.paths.lock_dir,
        command_timeout=config.probe.command_timeout,
        metadata_timeout=config.probe.metadata_timeout,
        use_metadata=config.probe.metadata,
    )


def render(ui: ConsoleUI, result: RunResult, mode: ExecutionMode):
    """End-of-run output."""
    if result.action == RunAction.VERIFY and result.drift is not None:
        ui.print_drift(result.drift)
    elif result.action == RunAction.CLEANUP:
        ui.print_cleanup(result.cleanup, dry_run=mode != ExecutionMode.APPLY)
    elif result.report is not None and mode != ExecutionMode.REPORT:
        notes = result.plan.notes if result.plan else ()
        ui.print_apply_summary(result.report, notes)
        if result.plan_path:
            ui.print(f"Plan saved: {result.plan_path} (check with --verify)", highlight=False)


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run one tool, return the exit code."""
    args = build_parser().parse_args(argv)
    ui = ConsoleUI(quiet=args.quiet, verbose=args.verbose)

    try:
        config = Config.load(args.config).override_from_args(args)
        errors = config.validate()
        if errors:
            raise ValidationError(errors[0])
        setup_logging(verbose=config.output.verbose, quiet=config.output.quiet)
        ui.quiet = config.output.quiet
        ui.verbose = config.output.verbose
        logger.debug(config.summary())

        engine_config = build_engine_config(args, config)
        if engine_config.mode != ExecutionMode.REPORT:
            ui.print_banner(args.tool, engine_config.action if engine_config.action != RunAction.APPLY
                            else engine_config.mode.value)
        result = TuningEngine(engine_config, ui=ui).run()
        render(ui, result, engine_config.mode)
        return result.exit_code

    except KeyboardInterrupt:
        ui.print("\nInterrupted by user")
        return EXIT_INTERRUPTED

    except HwtuneError as e:
        ui.error(str(e))
        return EXIT_ERROR


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    sys.exit(run(argv))


def network_main():
    sys.exit(run(["network"] + sys.argv[1:]))


def system_main():
    sys.exit(run(["system"] + sys.argv[1:]))


if __name__ == "__main__":
    main()

"""
ConsoleUI - Rich-based console output for both tools.

One-line statuses per effect, dry-run lines, report blocks, confirmation
prompts and the end-of-run summaries.
"""

from typing import Iterable, List, Optional

try:
    from rich.console import Console
    from rich.panel import Panel
    from rich.table import Table
    RICH_AVAILABLE = True
except ImportError:
    RICH_AVAILABLE = False

from ..protocol.facts import HardwareFacts
from ..protocol.plan import TuningPlan
from ..protocol.result import ApplyReport, DriftReport, DriftState, EffectResult, EffectStatus
from ..snapshot.models import CleanupEntry, RestoreAction

STATUS_ICONS = {
    EffectStatus.OK: ("✓", "green"),
    EffectStatus.NOT_APPLICABLE: ("-", "dim"),
    EffectStatus.SKIPPED: ("-", "dim"),
    EffectStatus.FAILED: ("✗", "red"),
}

DRIFT_STYLES = {
    DriftState.MATCH: "green",
    DriftState.DRIFT: "bold red",
    DriftState.MISSING: "bold red",
    DriftState.UNAVAILABLE: "dim",
}


class ConsoleUI:
    """
    Rich console interface for network-optimize and system-optimize.
    """

    def __init__(self, quiet: bool = False, verbose: bool = False, console=None):
        self.quiet = quiet
        self.verbose = verbose
        if console is not None:
            self.console = console
        else:
            self.console = Console() if RICH_AVAILABLE else None

    def print(self, *args, **kwargs):
        """Print to console."""
        if self.quiet:
            return
        if self.console:
            self.console.print(*args, **kwargs)
        else:
            print(*args)

    def plain(self, text: str):
        """Print text verbatim (no markup, no wrapping)."""
        if self.console:
            self.console.out(text, highlight=False)
        else:
            print(text)

    def print_header(self, title: str):
        """Print a section header."""
        if self.quiet:
            return

        if self.console:
            self.console.print()
            self.console.rule(f"[bold blue]{title}[/]")
        else:
            print(f"\n{'='*60}")
            print(f" {title}")
            print('='*60)

    def print_banner(self, tool: str, mode: str):
        if self.quiet:
            return
        title = f"{tool}-optimize"
        if self.console:
            self.console.print(Panel(f"[bold cyan]{title}[/] [dim]({mode})[/]",
                                     border_style="cyan"))
        else:
            print(f"{title} ({mode})")

    # =========================================================================
    # Facts / plan
    # =========================================================================

    def print_facts(self, facts: HardwareFacts, profile: str):
        """Display the detected hardware."""
        if self.quiet:
            return

        self.print_header("Detected Hardware")
        rows = [
            ("Profile", profile),
            ("CPU", f"{facts.cpu_model or facts.cpu_vendor} ({facts.cpu_cores} cores, "
                    f"{facts.numa_nodes} NUMA)"),
            ("RAM", f"{facts.ram_gb_ceil} GB"),
            ("Virtualization", facts.is_vm),
            ("Distro / kernel", f"{facts.distro_id} / {facts.kernel_version or '?'}"),
        ]
        if facts.cloud_provider.value != "none":
            cloud = f"{facts.cloud_provider.value} {facts.instance_type}".strip()
            if facts.instance_net_tier.value != "none":
                cloud += f" (network tier: {facts.instance_net_tier.value})"
            rows.append(("Cloud", cloud))
        for device in facts.storage:
            kind = "SSD" if device.is_ssd else "HDD"
            if device.cloud_class.value != "none":
                kind += f", {device.cloud_class.value}"
            rows.append((f"Disk {device.name}", kind))
        for nic in facts.nics:
            rows.append((f"NIC {nic.iface}", f"{nic.driver or '?'} {nic.speed_mbps}Mb/s"))

        if self.console:
            table = Table(show_header=False, box=None)
            table.add_column("Key", style="dim")
            table.add_column("Value")
            for key, value in rows:
                table.add_row(key, value)
            self.console.print(table)
        else:
            for key, value in rows:
                print(f"{key}: {value}")

    def print_params(self, plan: TuningPlan):
        """Derived named parameters with the layer that set them (--verbose)."""
        if self.quiet or not self.verbose:
            return

        self.print_header("Derived Parameters")
        if self.console:
            table = Table(box=None)
            table.add_column("Parameter", style="dim")
            table.add_column("Value")
            table.add_column("Source", style="cyan")
            for name, entry in sorted(plan.params.items()):
                table.add_row(name, str(entry.value), f"{entry.layer.name.lower()}:{entry.rule}")
            self.console.print(table)
        else:
            for name, entry in sorted(plan.params.items()):
                print(f"{name} = {entry.value} ({entry.layer.name.lower()}:{entry.rule})")

    # =========================================================================
    # Executor output
    # =========================================================================

    def dry_run(self, line: str):
        self.plain(line)

    def report_block(self, block: str):
        self.plain(block)

    def effect_result(self, result: EffectResult):
        """One-line status for one effect."""
        if self.quiet:
            return
        if result.status == EffectStatus.NOT_APPLICABLE and not self.verbose:
            return
        icon, color = STATUS_ICONS[result.status]
        detail = f" ({result.detail})" if result.detail else ""
        if self.console:
            self.console.print(f"  [{color}]{icon}[/] {result.target}[dim]{detail}[/]",
                               highlight=False)
        else:
            print(f"  {icon} {result.target}{detail}")

    def warning(self, message: str):
        if self.console:
            self.console.print(f"[yellow]WARNING:[/] {message}", highlight=False)
        else:
            print(f"WARNING: {message}")

    def error(self, message: str):
        if self.console:
            self.console.print(f"[bold red]ERROR:[/] {message}", highlight=False)
        else:
            print(f"ERROR: {message}")

    # =========================================================================
    # Confirmation
    # =========================================================================

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for confirmation."""
        if RICH_AVAILABLE:
            from rich.prompt import Confirm
            return Confirm.ask(message, default=default)
        else:
            response = input(f"{message} [y/N]: ").lower()
            return response in ('y', 'yes')

    def confirm_danger(self, danger) -> bool:
        """Explain a dangerous flag and ask before applying it."""
        if self.console:
            self.console.print(Panel(
                f"[bold]--{danger.option}[/]\n{danger.description}\n"
                f"Impact: [bold red]{danger.impact}[/]",
                title="Dangerous option", border_style="red",
            ))
        else:
            print(f"--{danger.option}: {danger.description} (impact: {danger.impact})")
        return self.confirm(f"Apply --{danger.option}?", default=False)

    # =========================================================================
    # Summaries
    # =========================================================================

    def print_apply_summary(self, report: ApplyReport, notes: Iterable[str] = ()):
        if self.quiet:
            return

        counts = report.summary()
        self.print_header("Summary")
        line = (f"ok={counts['ok']}  failed={counts['failed']}  "
                f"not available={counts['not_applicable']}  skipped={counts['skipped']}")
        self.print(line, highlight=False)
        if report.backup_dir:
            self.print(f"Backup: {report.backup_dir}", highlight=False)
        for failure in report.failures:
            self.print(f"  [red]✗[/] {failure.target}: {failure.detail}", highlight=False)
        for note in notes:
            self.print(f"  [dim]note:[/] {note}", highlight=False)

    def print_drift(self, report: DriftReport):
        """Drift table; always shows drifted rows, matches only with --verbose."""
        rows: List = [e for e in report.entries
                      if self.verbose or e.state not in (DriftState.MATCH, DriftState.UNAVAILABLE)]

        if self.console:
            table = Table(title=f"{report.tool}-optimize drift")
            table.add_column("Kind", style="dim")
            table.add_column("Target")
            table.add_column("Expected")
            table.add_column("Actual")
            table.add_column("State")
            for entry in rows:
                style = DRIFT_STYLES[entry.state]
                table.add_row(entry.kind, entry.target, entry.expected,
                              entry.actual if entry.actual is not None else "-",
                              f"[{style}]{entry.state.value}[/]")
            if rows:
                self.console.print(table)
            total = len(report.entries)
            if report.has_drift:
                self.console.print(f"[bold red]{len(report.drifted)} of {total} checks drifted[/]")
            else:
                self.console.print(f"[green]No drift ({total} checks)[/]")
        else:
            for entry in rows:
                print(f"{entry.state.value:12} {entry.kind:7} {entry.target}: "
                      f"expected {entry.expected}, actual {entry.actual}")
            print(f"{len(report.drifted)} drifted" if report.has_drift else "No drift")

    def print_cleanup(self, entries: List[CleanupEntry], dry_run: bool = False):
        if self.quiet:
            return

        self.print_header("Cleanup (dry-run)" if dry_run else "Cleanup")
        verbs = {
            RestoreAction.RESTORED: ("✓", "green", "restored"),
            RestoreAction.REMOVED: ("✓", "yellow", "removed"),
            RestoreAction.ABSENT: ("-", "dim", "not present"),
        }
        for entry in entries:
            icon, color, verb = verbs[entry.action]
            if self.console:
                self.console.print(f"  [{color}]{icon}[/] {entry.path} [dim]({verb})[/]",
                                   highlight=False)
            else:
                print(f"  {icon} {entry.path} ({verb})")

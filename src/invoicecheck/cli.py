"""CLI interface for invoicecheck."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Mapping, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from invoicecheck import __version__
from invoicecheck.client import InvoiceApiClient
from invoicecheck.config import settings
from invoicecheck.harness.automation import AutomationFacade
from invoicecheck.harness.models import RunConfig, RunResults, UnknownSuiteError
from invoicecheck.harness.orchestrator import ClientFactory, MasterOrchestrator, run_full_test_suite
from invoicecheck.harness.report import ReadinessTier, RunReport
from invoicecheck.suites import SuiteFactory

# Configure logging with Rich
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)]
)

logger = logging.getLogger(__name__)

# Create Typer app
app = typer.Typer(
    name="invoicecheck",
    help="Probe harness and deployment gate for the invoicing platform"
)

console = Console()

# Swapped out by tests and embedding applications
client_factory: ClientFactory = InvoiceApiClient
suite_factories: Optional[Mapping[str, SuiteFactory]] = None

EXPORT_FORMATS = ("json", "html", "markdown")

TIER_STYLES = {
    ReadinessTier.PRODUCTION_READY: "green",
    ReadinessTier.MOSTLY_READY: "yellow",
    ReadinessTier.NEEDS_WORK: "dark_orange",
    ReadinessTier.NOT_READY: "red",
}


def _set_verbose_logging(verbose: bool) -> Optional[int]:
    if not verbose:
        return None
    root_logger = logging.getLogger()
    previous_level = root_logger.level
    root_logger.setLevel(logging.DEBUG)
    return previous_level


def _config(ctx: typer.Context) -> RunConfig:
    return ctx.obj["config"]


def _orchestrator(config: RunConfig) -> MasterOrchestrator:
    return MasterOrchestrator(config, suite_factories=suite_factories, client_factory=client_factory)


def _facade(config: RunConfig) -> AutomationFacade:
    return AutomationFacade(config, suite_factories=suite_factories, client_factory=client_factory)


def _check_format(fmt: str) -> str:
    if fmt not in EXPORT_FORMATS:
        console.print(f"[red]Unsupported format: {fmt} (choose from {', '.join(EXPORT_FORMATS)})[/red]")
        raise typer.Exit(2)
    return fmt


def _print_report(report: RunReport) -> None:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Suite", style="cyan")
    table.add_column("Tests", justify="right", width=6)
    table.add_column("Passed", justify="right", width=7)
    table.add_column("Failed", justify="right", width=7)
    table.add_column("Rate", justify="right", width=7)
    table.add_column("Duration", justify="right", width=10)

    for summary in report.suites:
        failed_style = "red" if summary.failed else "green"
        table.add_row(
            summary.name,
            str(summary.total),
            str(summary.passed),
            f"[{failed_style}]{summary.failed}[/{failed_style}]",
            f"{summary.success_rate:.1f}%",
            f"{summary.duration_ms}ms",
        )
    for name in report.aborted_suites:
        table.add_row(name, "-", "-", "[red]aborted[/red]", "-", "-")

    console.print(table)
    style = TIER_STYLES[report.tier]
    console.print(
        f"\nTotal: {report.total}  Passed: [green]{report.passed}[/green]  "
        f"Failed: [red]{report.failed}[/red]  Success rate: {report.success_rate:.1f}%"
    )
    console.print(f"Readiness: [{style}]{report.tier.value}[/{style}]\n")
    for recommendation in report.recommendations:
        console.print(f"  • {recommendation.text}", markup=False)
    console.print()


def _finish_run(
    orchestrator: MasterOrchestrator,
    results: RunResults,
    fmt: str,
    output: Optional[Path],
) -> RunReport:
    report = orchestrator.generate_report(results)
    _print_report(report)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(orchestrator.export_results(results, fmt), encoding="utf-8")
        console.print(f"[dim]Results written to {output}[/dim]")
    return report


def _run_selection(
    ctx: typer.Context,
    selection: str,
    fmt: str,
    output: Optional[Path],
    verbose: bool,
) -> RunReport:
    _check_format(fmt)
    previous_level = _set_verbose_logging(verbose)
    try:
        orchestrator = _orchestrator(_config(ctx))
        results = asyncio.run(getattr(orchestrator, selection)())
        return _finish_run(orchestrator, results, fmt, output)
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)


@app.callback()
def configure(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-u",
        help="Target deployment (defaults to INVOICECHECK_BASE_URL)"
    ),
    api_path: Optional[str] = typer.Option(
        None,
        "--api-path",
        help="API prefix under the base URL"
    ),
    timeout_ms: Optional[int] = typer.Option(
        None,
        "--timeout-ms",
        "-t",
        min=1,
        help="Default per-probe deadline in milliseconds"
    ),
    retries: Optional[int] = typer.Option(
        None,
        "--retries",
        "-r",
        min=1,
        help="Attempts per probe (1 disables retry)"
    ),
    sequential: bool = typer.Option(
        False,
        "--sequential",
        help="Run probes of a suite one at a time"
    ),
):
    """Shared target and runner options."""
    overrides = {
        "base_url": base_url,
        "api_base_path": api_path,
        "default_timeout_ms": timeout_ms,
        "retry_count": retries,
        "concurrent": False if sequential else None,
    }
    ctx.obj = {"config": settings.run_config(**overrides)}


_format_option = typer.Option("markdown", "--format", "-f", help="Export format: json, html or markdown")
_output_option = typer.Option(None, "--output", "-o", help="Write the export to this file")
_verbose_option = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")


@app.command("run-all")
def run_all(
    ctx: typer.Context,
    fmt: str = _format_option,
    output: Optional[Path] = _output_option,
    verbose: bool = _verbose_option,
):
    """
    Run every registered suite and save the Markdown report, or write the export to --output.
    """
    console.print("\n[bold blue]🧪 Full Test Run[/bold blue]\n")
    if output is not None:
        _run_selection(ctx, "run_all", fmt, output, verbose)
        return

    _check_format(fmt)
    previous_level = _set_verbose_logging(verbose)
    try:
        orchestrator = _orchestrator(_config(ctx))
        report_path = asyncio.run(
            run_full_test_suite(reports_dir=settings.reports_dir, orchestrator=orchestrator)
        )
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)

    _print_report(orchestrator.generate_report(orchestrator.runner.results))
    console.print(f"[dim]Detailed report saved to: {report_path}[/dim]")


@app.command("run-critical")
def run_critical(
    ctx: typer.Context,
    fmt: str = _format_option,
    output: Optional[Path] = _output_option,
    verbose: bool = _verbose_option,
):
    """
    Run the critical suites (forms, API, production readiness). Exits 1 on any failure.
    """
    console.print("\n[bold blue]🚦 Critical Tests[/bold blue]\n")
    report = _run_selection(ctx, "run_critical", fmt, output, verbose)
    if report.failed or report.aborted_suites:
        console.print("[red]❌ Critical test failures detected - deployment blocked[/red]")
        raise typer.Exit(1)
    console.print("[green]✅ All critical tests passed - ready for deployment[/green]")


@app.command("run-robustness")
def run_robustness(
    ctx: typer.Context,
    fmt: str = _format_option,
    output: Optional[Path] = _output_option,
    verbose: bool = _verbose_option,
):
    """Run the edge-case suite."""
    console.print("\n[bold blue]🛡 Robustness Tests[/bold blue]\n")
    _run_selection(ctx, "run_robustness", fmt, output, verbose)


@app.command("run-suite")
def run_suite(
    ctx: typer.Context,
    name: str = typer.Argument(
        ...,
        help="Suite name, see list-suites"
    ),
    fmt: str = _format_option,
    output: Optional[Path] = _output_option,
    verbose: bool = _verbose_option,
):
    """Run a single suite by name."""
    _check_format(fmt)
    previous_level = _set_verbose_logging(verbose)
    try:
        orchestrator = _orchestrator(_config(ctx))
        try:
            results = asyncio.run(orchestrator.run_suite(name))
        except UnknownSuiteError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(2) from exc
        _finish_run(orchestrator, results, fmt, output)
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)


@app.command("run-performance")
def run_performance(
    ctx: typer.Context,
    verbose: bool = _verbose_option,
):
    """
    Run the performance suite and print headline metrics. Regressions warn but never fail.
    """
    console.print("\n[bold blue]⚡ Performance Regression Tests[/bold blue]\n")
    previous_level = _set_verbose_logging(verbose)
    try:
        regression = asyncio.run(_facade(_config(ctx)).run_performance_regression_tests())
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for metric, value in regression.metrics.items():
        table.add_row(metric, "-" if value < 0 else f"{value:.1f}")
    console.print(table)

    if regression.passed:
        console.print("[green]✅ Performance regression tests passed[/green]")
    else:
        console.print("[yellow]⚠️ Performance regression detected - review recommended[/yellow]")


@app.command("run-pre-deployment")
def run_pre_deployment(
    ctx: typer.Context,
    verbose: bool = _verbose_option,
):
    """Pre-deployment gate. Exits 1 when the critical suites do not all pass."""
    previous_level = _set_verbose_logging(verbose)
    try:
        passed = asyncio.run(_facade(_config(ctx)).run_pre_deployment_tests())
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)
    if not passed:
        console.print("[red]❌ Pre-deployment tests failed[/red]")
        raise typer.Exit(1)
    console.print("[green]✅ Pre-deployment tests passed[/green]")


@app.command("run-post-deployment")
def run_post_deployment(
    ctx: typer.Context,
    verbose: bool = _verbose_option,
):
    """Fast post-deployment verification (short timeout, single attempt). Exits 1 on failure."""
    previous_level = _set_verbose_logging(verbose)
    try:
        passed = asyncio.run(_facade(_config(ctx)).run_post_deployment_tests())
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)
    if not passed:
        console.print("[red]❌ Post-deployment verification failed[/red]")
        raise typer.Exit(1)
    console.print("[green]✅ Post-deployment verification passed[/green]")


@app.command("run-monitor")
def run_monitor(ctx: typer.Context):
    """Lightweight health checks; prints issues but never fails the process."""
    report = asyncio.run(_facade(_config(ctx)).run_monitoring_tests())
    if report.healthy:
        console.print("[green]✅ All monitoring checks passed[/green]")
        return
    console.print(f"[yellow]⚠️ Monitoring detected {len(report.issues)} issue(s):[/yellow]")
    for issue in report.issues:
        console.print(f"  • {issue}", markup=False)


@app.command("run-pipeline")
def run_pipeline(
    ctx: typer.Context,
    verbose: bool = _verbose_option,
):
    """
    Run the CI pipeline: pre-deployment gate, performance check, post-deployment verification.
    """
    console.print("\n[bold blue]🔄 CI/CD Test Pipeline[/bold blue]\n")
    previous_level = _set_verbose_logging(verbose)
    try:
        outcome = asyncio.run(_facade(_config(ctx)).run_ci_pipeline())
    finally:
        if previous_level is not None:
            logging.getLogger().setLevel(previous_level)

    stages = " → ".join(stage.value for stage in outcome.history)
    console.print(f"Stages: [cyan]{stages}[/cyan]")
    for warning in outcome.warnings:
        console.print(f"[yellow]⚠️ {warning}[/yellow]")
    if outcome.passed:
        console.print("[green]✅ CI/CD pipeline completed successfully[/green]")
    else:
        console.print(f"[red]❌ {outcome.reason}[/red]")
    raise typer.Exit(outcome.exit_code)


@app.command("list-suites")
def list_suites(ctx: typer.Context):
    """List registered suites."""
    orchestrator = _orchestrator(_config(ctx))

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Title")
    table.add_column("Probes", justify="right", width=7)
    for name in orchestrator.available_suites():
        suite = orchestrator.suite(name)
        table.add_row(name, suite.label, str(len(suite.active_cases())))
    console.print(table)


@app.command("ci-config")
def ci_config(
    scripts: bool = typer.Option(
        False,
        "--scripts",
        help="Print task aliases instead of the workflow"
    )
):
    """Print a GitHub Actions workflow (or task aliases) wired to these commands."""
    facade = AutomationFacade(settings.run_config())
    if scripts:
        for task, command in facade.generate_package_scripts().items():
            console.print(f"{task}: {command}", markup=False, highlight=False)
        return
    console.print(facade.generate_ci_workflow(), markup=False, highlight=False)


@app.command()
def version():
    """Show version information."""
    console.print(f"[cyan]invoicecheck[/cyan] v{__version__}")


def main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        logger.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main()

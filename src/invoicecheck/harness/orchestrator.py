"""Suite registry and selection policies on top of the runner."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from invoicecheck.client import InvoiceApiClient
from invoicecheck.harness.models import ProbeSuite, RunConfig, RunResults, UnknownSuiteError
from invoicecheck.harness.observer import RunObserver
from invoicecheck.harness.report import ReportGenerator, RunReport
from invoicecheck.harness.runner import TestRunner, export_results
from invoicecheck.suites import (
    CRITICAL_SUITES,
    DEFAULT_SUITE_FACTORIES,
    PERFORMANCE_SUITES,
    ROBUSTNESS_SUITES,
    SuiteFactory,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[RunConfig], InvoiceApiClient]

SUMMARY_START = "Overall Summary"
SUMMARY_END = "Test Results by Category"


class MasterOrchestrator:
    """Owns the suite registry for one run configuration and drives the runner over subsets of it.

    Suites are built in the constructor from ``suite_factories`` (name -> factory), each with its
    own ``InvoiceApiClient`` from ``client_factory``, so independent orchestrators never share
    state.
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        observer: Optional[RunObserver] = None,
        suite_factories: Optional[Mapping[str, SuiteFactory]] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.config = config or RunConfig()
        self.runner = TestRunner(self.config, observer)
        self.reporter = ReportGenerator(environment=self.config.environment, base_url=self.config.base_url)
        self._client_factory: ClientFactory = client_factory or InvoiceApiClient
        factories = suite_factories if suite_factories is not None else DEFAULT_SUITE_FACTORIES

        self._suites: Dict[str, ProbeSuite] = {}
        for name, factory in factories.items():
            suite = factory(self.config, self._client_factory(self.config))
            if suite.name != name:
                raise ValueError(f"Suite factory registered as '{name}' built suite '{suite.name}'")
            self._suites[name] = suite

    @property
    def aborted_suites(self) -> Dict[str, str]:
        return dict(self.runner.aborted_suites)

    def available_suites(self) -> List[str]:
        return list(self._suites)

    def suite(self, name: str) -> ProbeSuite:
        try:
            return self._suites[name]
        except KeyError:
            raise UnknownSuiteError(name, self.available_suites()) from None

    def _select(self, names: Sequence[str]) -> List[ProbeSuite]:
        # subsets skip names a custom registry does not carry
        return [self._suites[name] for name in names if name in self._suites]

    async def _run(self, suites: List[ProbeSuite]) -> RunResults:
        return await self.runner.run_all_suites(suites)

    async def run_all(self) -> RunResults:
        logger.info("Running all %s test suite(s)", len(self._suites))
        return await self._run(list(self._suites.values()))

    async def run_critical(self) -> RunResults:
        logger.info("Running critical tests")
        return await self._run(self._select(CRITICAL_SUITES))

    async def run_performance(self) -> RunResults:
        logger.info("Running performance tests")
        return await self._run(self._select(PERFORMANCE_SUITES))

    async def run_robustness(self) -> RunResults:
        logger.info("Running robustness tests")
        return await self._run(self._select(ROBUSTNESS_SUITES))

    async def run_suite(self, name: str) -> RunResults:
        suite = self.suite(name)
        logger.info("Running test suite: %s", name)
        return await self._run([suite])

    def generate_report(self, results: RunResults, aborted_suites: Optional[Mapping[str, str]] = None) -> RunReport:
        aborted = self.runner.aborted_suites if aborted_suites is None else aborted_suites
        return self.reporter.generate(results, aborted)

    def render_markdown(self, results: RunResults) -> str:
        return self.reporter.render_markdown(self.generate_report(results))

    def export_results(self, results: RunResults, fmt: str = "json") -> str:
        """Render already-collected results; ``markdown`` goes through the report generator."""
        if fmt == "markdown":
            return self.render_markdown(results)
        return export_results(results, fmt)


def summary_section(markdown: str) -> str:
    """Slice the overall-summary block out of a rendered report."""
    lines = markdown.split("\n")
    start = next((index for index, line in enumerate(lines) if SUMMARY_START in line), None)
    end = next((index for index, line in enumerate(lines) if SUMMARY_END in line), None)
    if start is None or end is None or end <= start:
        return ""
    return "\n".join(lines[start:end]).strip()


def save_report(markdown: str, reports_dir: Path) -> Path:
    reports_dir.mkdir(parents=True, exist_ok=True)
    timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    report_path = reports_dir / f"test-report-{timestamp}.md"
    report_path.write_text(markdown, encoding="utf-8")
    return report_path


async def run_full_test_suite(
    config: Optional[RunConfig] = None,
    reports_dir: Path = Path("test-reports"),
    orchestrator: Optional[MasterOrchestrator] = None,
) -> Path:
    """Run every suite, log the overall summary and save the Markdown report. Returns its path."""
    orchestrator = orchestrator or MasterOrchestrator(config)
    results = await orchestrator.run_all()
    markdown = orchestrator.render_markdown(results)

    logger.info("TEST REPORT SUMMARY\n%s", summary_section(markdown))
    report_path = save_report(markdown, reports_dir)
    logger.info("Detailed report saved to: %s", report_path)
    return report_path


def critical_failures(results: RunResults, aborted_suites: Mapping[str, str]) -> Dict[str, int]:
    """Suite name -> failed probe count for every failing or aborted suite."""
    failures = {
        name: len([result for result in suite_results if not result.success])
        for name, suite_results in results.items()
    }
    failures = {name: count for name, count in failures.items() if count}
    for name in aborted_suites:
        failures.setdefault(name, 0)
    return failures


async def run_critical_tests_only(
    config: Optional[RunConfig] = None,
    orchestrator: Optional[MasterOrchestrator] = None,
) -> bool:
    """Run the critical subset; ``True`` only when nothing failed and no suite aborted."""
    orchestrator = orchestrator or MasterOrchestrator(config)
    results = await orchestrator.run_critical()
    aborted = orchestrator.aborted_suites

    failures = critical_failures(results, aborted)
    for name, count in failures.items():
        if name in aborted:
            logger.error("Critical suite %s aborted: %s", name, aborted[name])
        else:
            logger.error("Critical test failures in %s: %s tests failed", name, count)

    if failures:
        logger.error("Critical test failures detected - deployment blocked")
        return False
    logger.info("All critical tests passed - ready for deployment")
    return True

"""Suite execution with per-probe timeout, retry and concurrency policy."""

from __future__ import annotations

import asyncio
import html
import json
import logging
import time
from typing import Dict, Iterable, List, Optional

from invoicecheck.harness.models import (
    ProbeCase,
    ProbeResult,
    ProbeSuite,
    RunConfig,
    RunResults,
    SuiteRunResult,
    SuiteSetupError,
)
from invoicecheck.harness.observer import LoggingObserver, RunObserver

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


class TestRunner:
    """Execute probe suites under the timeout, retry and concurrency policy of a ``RunConfig``."""

    __test__ = False  # not a pytest collection target

    def __init__(self, config: Optional[RunConfig] = None, observer: Optional[RunObserver] = None) -> None:
        self.config = config or RunConfig()
        self.observer: RunObserver = observer or LoggingObserver()
        self._results: Dict[str, SuiteRunResult] = {}
        self.aborted_suites: Dict[str, str] = {}

    @property
    def results(self) -> RunResults:
        return dict(self._results)

    async def run_suite(self, suite: ProbeSuite) -> SuiteRunResult:
        cases = suite.active_cases()
        self.observer.on_suite_start(suite.name, len(cases))

        if suite.setup is not None:
            try:
                await suite.setup()
            except Exception as exc:
                self.observer.on_suite_error(suite.name, exc)
                raise SuiteSetupError(suite.name, exc) from exc

        try:
            if self.config.concurrent:
                gathered = await asyncio.gather(*(self.run_test(case, suite.name) for case in cases))
                results: SuiteRunResult = list(gathered)
            else:
                results = []
                for case in cases:
                    results.append(await self.run_test(case, suite.name))
        finally:
            await self._run_teardown(suite)

        self._results[suite.name] = results
        self.observer.on_suite_complete(suite.name, results)
        return results

    async def _run_teardown(self, suite: ProbeSuite) -> None:
        if suite.teardown is None:
            return
        try:
            await suite.teardown()
        except Exception as exc:  # noqa: BLE001 - teardown must never mask probe results
            self.observer.on_teardown_error(suite.name, exc)

    async def run_test(self, case: ProbeCase, suite_name: str = "") -> ProbeResult:
        timeout_ms = case.timeout_ms if case.timeout_ms is not None else self.config.default_timeout_ms
        self.observer.on_probe_start(suite_name, case.name)
        start = time.perf_counter()

        try:
            result = await asyncio.wait_for(self._execute_with_retry(case, suite_name), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = TimeoutError(f"Test timeout after {timeout_ms}ms: {case.name}")
            result = ProbeResult(success=False, message=str(error), error=error)

        result = result.with_duration(_elapsed_ms(start))
        self.observer.on_probe_complete(suite_name, case.name, result)
        return result

    async def _execute_with_retry(self, case: ProbeCase, suite_name: str) -> ProbeResult:
        attempts = self.config.retry_count

        for attempt in range(1, attempts):
            result = await self._attempt(case)
            if result.success:
                return result
            if result.error is None and not self.config.retry_failed_results:
                return result

            delay_ms = self.config.backoff_ms(attempt)
            self.observer.on_probe_retry(suite_name, case.name, attempt, attempts, delay_ms)
            logger.debug("Attempt %s of %s failed: %s", attempt, case.name, result.message)
            await asyncio.sleep(delay_ms / 1000)

        # final attempt, returned whatever its outcome
        return await self._attempt(case)

    async def _attempt(self, case: ProbeCase) -> ProbeResult:
        try:
            outcome = await case.run()
        except Exception as exc:  # noqa: BLE001 - a throwing probe is a failing probe
            return ProbeResult(success=False, message=str(exc) or type(exc).__name__, error=exc)
        if not isinstance(outcome, ProbeResult):
            return ProbeResult(
                success=False,
                message=f"Probe {case.name} returned {type(outcome).__name__} instead of a ProbeResult",
            )
        return outcome

    async def run_all_suites(self, suites: Iterable[ProbeSuite]) -> RunResults:
        suites = list(suites)
        logger.info("Starting test run with %s suite(s)", len(suites))
        self._results = {}
        self.aborted_suites = {}
        start = time.perf_counter()

        for suite in suites:
            try:
                await self.run_suite(suite)
            except SuiteSetupError as exc:
                self.aborted_suites[suite.name] = str(exc.cause)

        results = self.results
        self.observer.on_run_complete(results, _elapsed_ms(start))
        return results

    def export_results(self, fmt: str = "json") -> str:
        return export_results(self._results, fmt)


def render_json(results: RunResults) -> str:
    payload = {name: [result.to_dict() for result in suite_results] for name, suite_results in results.items()}
    return json.dumps(payload, indent=2, ensure_ascii=False)


def export_results(results: RunResults, fmt: str = "json") -> str:
    if fmt == "json":
        return render_json(results)
    if fmt == "html":
        return render_html(results)
    raise ValueError(f"Unsupported export format: {fmt}")


_HTML_HEAD = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Test Results</title>
<style>
body { font-family: Arial, sans-serif; margin: 20px; }
.suite { margin: 20px 0; border: 1px solid #ddd; padding: 15px; }
.passed { color: green; }
.failed { color: red; }
.summary { background: #f5f5f5; padding: 10px; margin: 10px 0; }
</style>
</head>
<body>
<h1>Test Results</h1>
"""


def render_html(results: RunResults) -> str:
    parts: List[str] = [_HTML_HEAD]
    for suite_name, suite_results in results.items():
        passed = len([result for result in suite_results if result.success])
        failed = len(suite_results) - passed
        parts.append(f'<div class="suite">\n<h2>{html.escape(suite_name)}</h2>\n')
        parts.append(
            f'<div class="summary"><strong>Passed:</strong> {passed} | <strong>Failed:</strong> {failed}</div>\n'
        )
        parts.append("<table>\n<tr><th>#</th><th>Status</th><th>Message</th><th>Duration</th></tr>\n")
        for index, result in enumerate(suite_results, start=1):
            status = "passed" if result.success else "failed"
            parts.append(
                f'<tr class="{status}"><td>{index}</td><td>{status}</td>'
                f"<td>{html.escape(result.message)}</td><td>{result.duration_ms}ms</td></tr>\n"
            )
        parts.append("</table>\n</div>\n")
    parts.append("</body>\n</html>\n")
    return "".join(parts)

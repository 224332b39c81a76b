"""Progress sinks invoked by the runner."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Protocol, Tuple

from invoicecheck.harness.models import ProbeResult, SuiteRunResult

logger = logging.getLogger(__name__)


class RunObserver(Protocol):
    def on_suite_start(self, suite_name: str, case_count: int) -> None: ...

    def on_probe_start(self, suite_name: str, case_name: str) -> None: ...

    def on_probe_retry(self, suite_name: str, case_name: str, attempt: int, total: int, delay_ms: int) -> None: ...

    def on_probe_complete(self, suite_name: str, case_name: str, result: ProbeResult) -> None: ...

    def on_suite_complete(self, suite_name: str, results: SuiteRunResult) -> None: ...

    def on_suite_error(self, suite_name: str, error: BaseException) -> None: ...

    def on_teardown_error(self, suite_name: str, error: BaseException) -> None: ...

    def on_run_complete(self, results: Mapping[str, SuiteRunResult], duration_ms: int) -> None: ...


def success_rate(results: SuiteRunResult) -> float:
    if not results:
        return 0.0
    passed = len([result for result in results if result.success])
    return passed / len(results) * 100


class LoggingObserver:
    """Default sink: writes progress lines through the module logger."""

    def on_suite_start(self, suite_name: str, case_count: int) -> None:
        logger.info("Running test suite: %s (%s probe(s))", suite_name, case_count)

    def on_probe_start(self, suite_name: str, case_name: str) -> None:
        logger.info("  Running: %s", case_name)

    def on_probe_retry(self, suite_name: str, case_name: str, attempt: int, total: int, delay_ms: int) -> None:
        logger.info("    Retry %s/%s for %s in %sms", attempt, total, case_name, delay_ms)

    def on_probe_complete(self, suite_name: str, case_name: str, result: ProbeResult) -> None:
        if result.success:
            logger.info("  ✓ %s (%sms)", case_name, result.duration_ms)
        else:
            logger.warning("  ✗ %s: %s (%sms)", case_name, result.message, result.duration_ms)

    def on_suite_complete(self, suite_name: str, results: SuiteRunResult) -> None:
        passed = len([result for result in results if result.success])
        failed = len(results) - passed
        total_duration = sum(result.duration_ms for result in results)
        logger.info(
            "Suite %s results: passed=%s failed=%s total=%sms success_rate=%.1f%%",
            suite_name,
            passed,
            failed,
            total_duration,
            success_rate(results),
        )

    def on_suite_error(self, suite_name: str, error: BaseException) -> None:
        logger.error("Suite %s failed: %s", suite_name, error)

    def on_teardown_error(self, suite_name: str, error: BaseException) -> None:
        logger.error("Teardown for suite %s failed: %s", suite_name, error, exc_info=error)

    def on_run_complete(self, results: Mapping[str, SuiteRunResult], duration_ms: int) -> None:
        all_results = [result for suite_results in results.values() for result in suite_results]
        passed = len([result for result in all_results if result.success])
        failed = len(all_results) - passed
        logger.info(
            "FINAL RESULTS: total=%s passed=%s failed=%s time=%sms success_rate=%.1f%%",
            len(all_results),
            passed,
            failed,
            duration_ms,
            success_rate(all_results),
        )
        if not failed:
            return
        logger.warning("Failed tests:")
        for suite_name, suite_results in results.items():
            failures = [result for result in suite_results if not result.success]
            if not failures:
                continue
            logger.warning("  Suite: %s", suite_name)
            for result in failures:
                logger.warning("    ✗ %s", result.message)


@dataclass
class CapturingObserver:
    """Records every callback; handy for assertions and for programmatic callers."""

    events: List[Tuple[str, Any]] = field(default_factory=list)

    def names(self, kind: str) -> List[Any]:
        return [payload for event, payload in self.events if event == kind]

    def on_suite_start(self, suite_name: str, case_count: int) -> None:
        self.events.append(("suite_start", suite_name))

    def on_probe_start(self, suite_name: str, case_name: str) -> None:
        self.events.append(("probe_start", case_name))

    def on_probe_retry(self, suite_name: str, case_name: str, attempt: int, total: int, delay_ms: int) -> None:
        self.events.append(("probe_retry", (case_name, attempt, delay_ms)))

    def on_probe_complete(self, suite_name: str, case_name: str, result: ProbeResult) -> None:
        self.events.append(("probe_complete", (case_name, result.success)))

    def on_suite_complete(self, suite_name: str, results: SuiteRunResult) -> None:
        self.events.append(("suite_complete", suite_name))

    def on_suite_error(self, suite_name: str, error: BaseException) -> None:
        self.events.append(("suite_error", suite_name))

    def on_teardown_error(self, suite_name: str, error: BaseException) -> None:
        self.events.append(("teardown_error", suite_name))

    def on_run_complete(self, results: Mapping[str, SuiteRunResult], duration_ms: int) -> None:
        self.events.append(("run_complete", list(results)))

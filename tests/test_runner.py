"""Tests for the suite runner: ordering, timeouts, retries and lifecycle hooks."""

import asyncio
import json
import time

import pytest

from invoicecheck.harness import CapturingObserver, ProbeCase, ProbeResult, ProbeSuite, RunConfig, TestRunner
from invoicecheck.harness.observer import success_rate
from invoicecheck.harness.runner import export_results


def fast_config(**overrides) -> RunConfig:
    values = {"retry_count": 1, "retry_initial_delay_ms": 0, "retry_max_delay_ms": 0, "default_timeout_ms": 2000}
    values.update(overrides)
    return RunConfig(**values)


def passing(message: str = "ok", delay: float = 0.0):
    async def run() -> ProbeResult:
        if delay:
            await asyncio.sleep(delay)
        return ProbeResult(success=True, message=message)

    return run


def failing(message: str = "nope"):
    async def run() -> ProbeResult:
        return ProbeResult(success=False, message=message)

    return run


class CountingProbe:
    """Fails a fixed number of times, then passes."""

    def __init__(self, failures: int, raise_error: bool = False) -> None:
        self.failures = failures
        self.raise_error = raise_error
        self.calls = 0

    async def __call__(self) -> ProbeResult:
        self.calls += 1
        if self.calls <= self.failures:
            if self.raise_error:
                raise RuntimeError(f"attempt {self.calls} exploded")
            return ProbeResult(success=False, message=f"attempt {self.calls} failed")
        return ProbeResult(success=True, message=f"passed on attempt {self.calls}")


# =============================================================================
# Ordering and concurrency
# =============================================================================


class TestOrdering:
    """Result arrays line up with case order."""

    async def test_concurrent_results_follow_case_order(self):
        """Cases finishing in reverse order still land at their own index."""
        cases = [
            ProbeCase(f"case-{index}", passing(f"case-{index}", delay=0.05 * (3 - index))) for index in range(4)
        ]
        runner = TestRunner(fast_config(concurrent=True), CapturingObserver())

        results = await runner.run_suite(ProbeSuite("ordering", cases))

        assert [result.message for result in results] == ["case-0", "case-1", "case-2", "case-3"]

    async def test_concurrent_cases_overlap(self):
        """Concurrent mode runs cases at the same time."""
        cases = [ProbeCase(f"slow-{index}", passing(delay=0.2)) for index in range(5)]
        runner = TestRunner(fast_config(concurrent=True), CapturingObserver())

        start = time.perf_counter()
        await runner.run_suite(ProbeSuite("overlap", cases))

        assert time.perf_counter() - start < 0.8

    async def test_sequential_mode_runs_one_at_a_time(self):
        """Sequential mode never has two probes in flight."""
        in_flight = 0
        peak = 0

        async def tracked() -> ProbeResult:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return ProbeResult(success=True, message="tracked")

        cases = [ProbeCase(f"tracked-{index}", tracked) for index in range(4)]
        runner = TestRunner(fast_config(concurrent=False), CapturingObserver())

        await runner.run_suite(ProbeSuite("sequential", cases))

        assert peak == 1

    async def test_mixed_suite_summary(self):
        """pass, fail, pass in sequence gives two passes and a 66.7% rate."""
        suite = ProbeSuite(
            "mixed",
            [ProbeCase("first", passing()), ProbeCase("second", failing()), ProbeCase("third", passing())],
        )
        runner = TestRunner(fast_config(concurrent=False), CapturingObserver())

        results = await runner.run_suite(suite)

        assert [result.success for result in results] == [True, False, True]
        assert round(success_rate(results), 1) == 66.7

    async def test_skipped_cases_are_omitted(self):
        """Skipped cases produce no result and are never invoked."""
        never = CountingProbe(failures=0)
        suite = ProbeSuite(
            "skips",
            [ProbeCase("kept", passing("kept")), ProbeCase("skipped", never, skip=True)],
        )
        runner = TestRunner(fast_config(), CapturingObserver())

        results = await runner.run_suite(suite)

        assert [result.message for result in results] == ["kept"]
        assert never.calls == 0


# =============================================================================
# Timeouts
# =============================================================================


class TestTimeouts:
    """Per-probe deadlines."""

    async def test_timeout_returns_failure_promptly(self):
        """A 500ms probe with a 100ms deadline fails in about 100ms."""
        runner = TestRunner(fast_config(), CapturingObserver())
        case = ProbeCase("slow", passing(delay=0.5), timeout_ms=100)

        start = time.perf_counter()
        result = await runner.run_test(case)
        elapsed = time.perf_counter() - start

        assert result.success is False
        assert "timeout" in result.message.lower()
        assert isinstance(result.error, TimeoutError)
        assert elapsed < 0.4

    async def test_late_success_is_discarded(self):
        """Work that would succeed after the deadline still records the timeout."""
        finished = asyncio.Event()

        async def late() -> ProbeResult:
            await asyncio.sleep(0.2)
            finished.set()
            return ProbeResult(success=True, message="too late")

        runner = TestRunner(fast_config(), CapturingObserver())
        result = await runner.run_test(ProbeCase("late", late, timeout_ms=50))
        await asyncio.sleep(0.25)

        assert result.success is False
        assert result.message != "too late"
        assert not finished.is_set()

    async def test_default_timeout_applies(self):
        """Cases without their own deadline use the configured default."""
        runner = TestRunner(fast_config(default_timeout_ms=50), CapturingObserver())

        result = await runner.run_test(ProbeCase("slow", passing(delay=0.3)))

        assert result.success is False
        assert "50ms" in result.message

    async def test_deadline_covers_every_retry(self):
        """Retries share a single deadline."""
        probe = CountingProbe(failures=100)
        config = fast_config(retry_count=50, retry_initial_delay_ms=40, retry_max_delay_ms=40)
        runner = TestRunner(config, CapturingObserver())

        result = await runner.run_test(ProbeCase("always failing", probe, timeout_ms=150))

        assert "timeout" in result.message.lower()
        assert probe.calls < 10


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    """Retry policy and backoff."""

    async def test_always_failing_probe_runs_exactly_retry_count_times(self):
        """Three attempts, and the last attempt's message survives."""
        probe = CountingProbe(failures=10)
        runner = TestRunner(fast_config(retry_count=3), CapturingObserver())

        result = await runner.run_test(ProbeCase("flaky", probe))

        assert probe.calls == 3
        assert result.success is False
        assert result.message == "attempt 3 failed"

    async def test_retry_recovers_after_exceptions(self):
        """A probe that raises twice then passes is reported as passing."""
        probe = CountingProbe(failures=2, raise_error=True)
        observer = CapturingObserver()
        runner = TestRunner(fast_config(retry_count=3), observer)

        result = await runner.run_test(ProbeCase("recovering", probe))

        assert result.success is True
        assert result.message == "passed on attempt 3"
        assert [attempt for _, attempt, _ in observer.names("probe_retry")] == [1, 2]

    async def test_last_attempt_error_is_returned_without_another_retry(self):
        """A probe that always raises yields the final attempt's error and no trailing retry event."""
        probe = CountingProbe(failures=10, raise_error=True)
        observer = CapturingObserver()
        runner = TestRunner(fast_config(retry_count=2), observer)

        result = await runner.run_test(ProbeCase("exploding", probe))

        assert probe.calls == 2
        assert result.success is False
        assert result.message == "attempt 2 exploded"
        assert isinstance(result.error, RuntimeError)
        assert [attempt for _, attempt, _ in observer.names("probe_retry")] == [1]

    async def test_single_attempt_means_no_retry(self):
        """retry_count=1 invokes the probe once."""
        probe = CountingProbe(failures=1)
        runner = TestRunner(fast_config(retry_count=1), CapturingObserver())

        result = await runner.run_test(ProbeCase("once", probe))

        assert probe.calls == 1
        assert result.success is False

    async def test_failed_results_not_retried_when_disabled(self):
        """Only raised errors are retried when failed results are final."""
        probe = CountingProbe(failures=1)
        runner = TestRunner(fast_config(retry_count=3, retry_failed_results=False), CapturingObserver())

        result = await runner.run_test(ProbeCase("final", probe))

        assert probe.calls == 1
        assert result.success is False

    def test_backoff_doubles_and_caps(self):
        """1s, 2s, 4s then the 10s cap."""
        config = RunConfig()

        assert [config.backoff_ms(attempt) for attempt in (1, 2, 3, 4, 5)] == [1000, 2000, 4000, 8000, 10000]

    async def test_retry_events_report_backoff(self):
        """Observers see the delay before each retry."""
        observer = CapturingObserver()
        config = fast_config(retry_count=3, retry_initial_delay_ms=10, retry_max_delay_ms=15)
        runner = TestRunner(config, observer)

        await runner.run_test(ProbeCase("backoff", CountingProbe(failures=5)))

        assert observer.names("probe_retry") == [("backoff", 1, 10), ("backoff", 2, 15)]


# =============================================================================
# Probe failure modes
# =============================================================================


class TestProbeFailures:
    """Misbehaving probes become failing results."""

    async def test_exception_becomes_failed_result(self):
        """The exception is attached to the result."""

        async def boom() -> ProbeResult:
            raise ValueError("database is on fire")

        runner = TestRunner(fast_config(), CapturingObserver())
        result = await runner.run_test(ProbeCase("boom", boom))

        assert result.success is False
        assert result.message == "database is on fire"
        assert isinstance(result.error, ValueError)

    async def test_wrong_return_type_is_a_failure(self):
        """Returning anything but a ProbeResult fails the probe."""

        async def sloppy():
            return {"success": True}

        runner = TestRunner(fast_config(), CapturingObserver())
        result = await runner.run_test(ProbeCase("sloppy", sloppy))

        assert result.success is False
        assert "dict" in result.message

    async def test_duration_is_measured(self):
        """The runner stamps wall time on every result."""
        runner = TestRunner(fast_config(), CapturingObserver())

        result = await runner.run_test(ProbeCase("timed", passing(delay=0.05)))

        assert result.duration_ms >= 40


# =============================================================================
# Setup and teardown
# =============================================================================


class TestLifecycle:
    """Suite hooks."""

    async def test_setup_failure_aborts_suite_and_run_continues(self):
        """A broken setup aborts its suite; the next suite still runs."""

        async def broken_setup() -> None:
            raise ConnectionError("cannot reach target")

        never = CountingProbe(failures=0)
        observer = CapturingObserver()
        runner = TestRunner(fast_config(), observer)

        results = await runner.run_all_suites(
            [
                ProbeSuite("broken", [ProbeCase("unreached", never)], setup=broken_setup),
                ProbeSuite("healthy", [ProbeCase("fine", passing())]),
            ]
        )

        assert list(results) == ["healthy"]
        assert runner.aborted_suites == {"broken": "cannot reach target"}
        assert never.calls == 0
        assert observer.names("suite_error") == ["broken"]

    async def test_teardown_error_keeps_results(self):
        """A throwing teardown is reported but results stand."""

        async def broken_teardown() -> None:
            raise RuntimeError("cleanup failed")

        observer = CapturingObserver()
        runner = TestRunner(fast_config(), observer)
        suite = ProbeSuite(
            "teardown",
            [ProbeCase("a", passing("a")), ProbeCase("b", failing("b"))],
            teardown=broken_teardown,
        )

        results = await runner.run_suite(suite)

        assert [(result.success, result.message) for result in results] == [(True, "a"), (False, "b")]
        assert observer.names("teardown_error") == ["teardown"]

    async def test_teardown_runs_after_probes(self):
        """Setup, probes, teardown, in that order."""
        calls = []

        async def setup() -> None:
            calls.append("setup")

        async def teardown() -> None:
            calls.append("teardown")

        async def body() -> ProbeResult:
            calls.append("probe")
            return ProbeResult(success=True, message="body")

        runner = TestRunner(fast_config(), CapturingObserver())
        await runner.run_suite(ProbeSuite("hooks", [ProbeCase("body", body)], setup=setup, teardown=teardown))

        assert calls == ["setup", "probe", "teardown"]

    async def test_run_all_resets_previous_results(self):
        """Each run starts from an empty result map."""
        runner = TestRunner(fast_config(), CapturingObserver())
        await runner.run_all_suites([ProbeSuite("first", [ProbeCase("a", passing())])])

        results = await runner.run_all_suites([ProbeSuite("second", [ProbeCase("b", passing())])])

        assert list(results) == ["second"]


# =============================================================================
# Export
# =============================================================================


class TestExport:
    """JSON and HTML exports."""

    @pytest.fixture
    def results(self):
        return {
            "api-testing": [
                ProbeResult(success=True, message="Invoice APIs: 9/9 passed", duration_ms=12),
                ProbeResult(success=False, message="<b>Upload</b> failed", duration_ms=7, error=OSError("reset")),
            ]
        }

    def test_json_export(self, results):
        """JSON carries every result, with errors flattened."""
        payload = json.loads(export_results(results, "json"))

        assert payload["api-testing"][0] == {"success": True, "message": "Invoice APIs: 9/9 passed", "duration_ms": 12}
        assert payload["api-testing"][1]["error"] == {"type": "OSError", "message": "reset"}

    def test_html_export_escapes_messages(self, results):
        """HTML lists pass/fail counts and escapes probe messages."""
        document = export_results(results, "html")

        assert "<strong>Passed:</strong> 1 | <strong>Failed:</strong> 1" in document
        assert "&lt;b&gt;Upload&lt;/b&gt; failed" in document

    def test_unknown_format_rejected(self, results):
        with pytest.raises(ValueError, match="Unsupported export format"):
            export_results(results, "xml")

    async def test_runner_exports_last_run(self):
        """The runner exports what it last collected."""
        runner = TestRunner(fast_config(), CapturingObserver())
        await runner.run_all_suites([ProbeSuite("only", [ProbeCase("a", passing("exported"))])])

        payload = json.loads(runner.export_results("json"))

        assert payload["only"][0]["message"] == "exported"

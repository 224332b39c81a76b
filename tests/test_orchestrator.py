"""Tests for the suite registry, selection policies and the full-run helpers."""

import json

import pytest

from invoicecheck.harness import CapturingObserver, ProbeCase, ProbeResult, ProbeSuite, UnknownSuiteError
from invoicecheck.harness.orchestrator import (
    MasterOrchestrator,
    critical_failures,
    run_critical_tests_only,
    run_full_test_suite,
    summary_section,
)
from invoicecheck.suites import CRITICAL_SUITES, DEFAULT_SUITE_FACTORIES, create_form_suite


def static_suite(name: str, *outcomes: bool, setup_error: Exception = None):
    """Factory for a suite whose probes return fixed outcomes."""

    def factory(config, client):
        def make(index: int, outcome: bool):
            async def run() -> ProbeResult:
                return ProbeResult(success=outcome, message=f"{name} probe {index}")

            return run

        async def setup() -> None:
            if setup_error is not None:
                raise setup_error

        return ProbeSuite(
            name=name,
            cases=[ProbeCase(f"{name}-{index}", make(index, outcome)) for index, outcome in enumerate(outcomes)],
            setup=setup,
            teardown=client.close,
        )

    return factory


@pytest.fixture
def registry():
    return {
        "form-testing": static_suite("form-testing", True, True),
        "api-testing": static_suite("api-testing", True),
        "production-readiness": static_suite("production-readiness", True, True, True),
        "performance-testing": static_suite("performance-testing", True),
        "realtime-testing": static_suite("realtime-testing", True),
        "edge-case-testing": static_suite("edge-case-testing", False),
    }


@pytest.fixture
def orchestrator_for(config, fake_app):
    def build(factories):
        return MasterOrchestrator(
            config,
            observer=CapturingObserver(),
            suite_factories=factories,
            client_factory=fake_app.client_factory,
        )

    return build


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    """Suite registration and lookup."""

    def test_default_registry_has_every_suite(self, config, fake_app):
        orchestrator = MasterOrchestrator(config, client_factory=fake_app.client_factory)

        assert orchestrator.available_suites() == list(DEFAULT_SUITE_FACTORIES)
        assert orchestrator.suite("api-testing").title == "API Integration Testing"

    def test_each_suite_gets_its_own_client(self, config, fake_app):
        clients = []

        def counting_factory(run_config):
            client = fake_app.client_factory(run_config)
            clients.append(client)
            return client

        MasterOrchestrator(config, client_factory=counting_factory)

        assert len(clients) == len(DEFAULT_SUITE_FACTORIES)
        assert len({id(client) for client in clients}) == len(clients)

    def test_unknown_suite_lists_known_names(self, orchestrator_for, registry):
        orchestrator = orchestrator_for(registry)

        with pytest.raises(UnknownSuiteError) as excinfo:
            orchestrator.suite("load-testing")

        assert excinfo.value.suite_name == "load-testing"
        assert "form-testing" in str(excinfo.value)
        assert isinstance(excinfo.value, KeyError)

    async def test_run_unknown_suite_raises(self, orchestrator_for, registry):
        with pytest.raises(UnknownSuiteError):
            await orchestrator_for(registry).run_suite("nope")

    def test_mismatched_factory_name_rejected(self, orchestrator_for):
        with pytest.raises(ValueError, match="built suite 'api-testing'"):
            orchestrator_for({"form-testing": static_suite("api-testing", True)})


# =============================================================================
# Selection policies
# =============================================================================


class TestSelection:
    """Named subsets of the registry."""

    async def test_run_all(self, orchestrator_for, registry):
        results = await orchestrator_for(registry).run_all()

        assert list(results) == list(registry)

    async def test_run_critical(self, orchestrator_for, registry):
        results = await orchestrator_for(registry).run_critical()

        assert tuple(results) == CRITICAL_SUITES

    async def test_run_performance(self, orchestrator_for, registry):
        results = await orchestrator_for(registry).run_performance()

        assert list(results) == ["performance-testing", "realtime-testing"]

    async def test_run_robustness(self, orchestrator_for, registry):
        results = await orchestrator_for(registry).run_robustness()

        assert list(results) == ["edge-case-testing"]
        assert results["edge-case-testing"][0].success is False

    async def test_subsets_skip_unregistered_suites(self, orchestrator_for):
        orchestrator = orchestrator_for({"api-testing": static_suite("api-testing", True)})

        results = await orchestrator.run_critical()

        assert list(results) == ["api-testing"]

    async def test_run_suite(self, orchestrator_for, registry):
        results = await orchestrator_for(registry).run_suite("production-readiness")

        assert list(results) == ["production-readiness"]
        assert len(results["production-readiness"]) == 3

    async def test_form_suite_against_application(self, orchestrator_for):
        """The real form suite passes end to end against the in-memory app."""
        orchestrator = orchestrator_for({"form-testing": create_form_suite})

        results = await orchestrator.run_suite("form-testing")

        failures = [result.message for result in results["form-testing"] if not result.success]
        assert failures == []
        assert len(results["form-testing"]) == 6


# =============================================================================
# Reporting helpers
# =============================================================================


class TestReporting:
    """Reports and exports built from orchestrated runs."""

    async def test_generate_report_uses_last_aborts(self, orchestrator_for, registry):
        registry["api-testing"] = static_suite("api-testing", True, setup_error=ConnectionError("down"))
        orchestrator = orchestrator_for(registry)

        results = await orchestrator.run_critical()
        report = orchestrator.generate_report(results)

        assert report.aborted_suites == {"api-testing": "down"}
        assert not report.production_ready

    async def test_export_formats(self, orchestrator_for, registry):
        orchestrator = orchestrator_for(registry)
        results = await orchestrator.run_robustness()

        assert "## 📈 Overall Summary" in orchestrator.export_results(results, "markdown")
        assert json.loads(orchestrator.export_results(results, "json"))["edge-case-testing"][0]["success"] is False
        assert "<h2>edge-case-testing</h2>" in orchestrator.export_results(results, "html")
        with pytest.raises(ValueError):
            orchestrator.export_results(results, "pdf")

    def test_summary_section(self):
        markdown = "# Report\n\n## 📈 Overall Summary\n\n- **Passed**: 3\n\n## 🎯 Test Results by Category\n..."

        assert summary_section(markdown) == "## 📈 Overall Summary\n\n- **Passed**: 3"
        assert summary_section("no sections here") == ""

    async def test_run_full_test_suite_saves_report(self, orchestrator_for, registry, tmp_path):
        report_path = await run_full_test_suite(reports_dir=tmp_path / "reports", orchestrator=orchestrator_for(registry))

        assert report_path.parent == tmp_path / "reports"
        assert report_path.name.startswith("test-report-")
        assert report_path.suffix == ".md"
        content = report_path.read_text(encoding="utf-8")
        assert "## EDGE CASE TESTING" in content
        assert "Low Priority" in content


# =============================================================================
# Critical gate
# =============================================================================


class TestCriticalGate:
    """run_critical_tests_only and failure accounting."""

    async def test_green_critical_suites_pass(self, orchestrator_for, registry):
        assert await run_critical_tests_only(orchestrator=orchestrator_for(registry)) is True

    async def test_failing_critical_probe_blocks(self, orchestrator_for, registry):
        registry["production-readiness"] = static_suite("production-readiness", True, False)

        assert await run_critical_tests_only(orchestrator=orchestrator_for(registry)) is False

    async def test_aborted_critical_suite_blocks(self, orchestrator_for, registry):
        registry["form-testing"] = static_suite("form-testing", True, setup_error=OSError("no route"))

        assert await run_critical_tests_only(orchestrator=orchestrator_for(registry)) is False

    async def test_non_critical_failures_ignored(self, orchestrator_for, registry):
        registry["performance-testing"] = static_suite("performance-testing", False)

        assert await run_critical_tests_only(orchestrator=orchestrator_for(registry)) is True

    def test_critical_failures_counts(self):
        results = {
            "form-testing": [ProbeResult(success=True, message="a")],
            "api-testing": [ProbeResult(success=False, message="b"), ProbeResult(success=False, message="c")],
        }

        assert critical_failures(results, {"production-readiness": "boom"}) == {
            "api-testing": 2,
            "production-readiness": 0,
        }

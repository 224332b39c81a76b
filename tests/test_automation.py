"""Tests for deployment gates, monitoring and the CI pipeline."""

import pytest

from invoicecheck.harness import CapturingObserver, ProbeCase, ProbeResult, ProbeSuite
from invoicecheck.harness.automation import (
    POST_DEPLOY_RETRIES,
    POST_DEPLOY_TIMEOUT_MS,
    AutomationFacade,
    HealthCheck,
    PipelineStage,
)
from invoicecheck.suites.performance import METRIC_SOURCES


def suite_factory(name, outcome):
    """Build a one-probe suite; ``outcome`` is a bool or a zero-argument callable."""

    def factory(config, client):
        async def run() -> ProbeResult:
            success = outcome() if callable(outcome) else outcome
            return ProbeResult(success=success, message=f"{name} {'passed' if success else 'failed'}")

        return ProbeSuite(name=name, cases=[ProbeCase(f"{name} probe", run)], teardown=client.close)

    return factory


def registry(**outcomes):
    names = (
        "form-testing",
        "api-testing",
        "production-readiness",
        "performance-testing",
        "realtime-testing",
        "edge-case-testing",
    )
    return {name: suite_factory(name, outcomes.get(name.replace("-", "_"), True)) for name in names}


@pytest.fixture
def facade_for(config, fake_app):
    def build(factories=None):
        return AutomationFacade(
            config,
            observer=CapturingObserver(),
            suite_factories=factories if factories is not None else registry(),
            client_factory=fake_app.client_factory,
        )

    return build


# =============================================================================
# Gates
# =============================================================================


class TestGates:
    """Pre- and post-deployment gates."""

    async def test_pre_deployment_passes_when_critical_green(self, facade_for):
        assert await facade_for().run_pre_deployment_tests() is True

    async def test_pre_deployment_blocks_on_failure(self, facade_for):
        assert await facade_for(registry(api_testing=False)).run_pre_deployment_tests() is False

    async def test_post_deployment_blocks_on_failure(self, facade_for):
        assert await facade_for(registry(production_readiness=False)).run_post_deployment_tests() is False

    async def test_post_deployment_ignores_robustness(self, facade_for):
        assert await facade_for(registry(edge_case_testing=False)).run_post_deployment_tests() is True

    def test_post_deployment_config_is_faster(self, facade_for, config):
        facade = facade_for()

        derived = facade.post_deployment_config()

        assert derived.default_timeout_ms == POST_DEPLOY_TIMEOUT_MS
        assert derived.retry_count == POST_DEPLOY_RETRIES
        assert derived.base_url == config.base_url
        assert facade.config.default_timeout_ms == config.default_timeout_ms


# =============================================================================
# Monitoring
# =============================================================================


class TestMonitoring:
    """Health checks against the live target."""

    async def test_healthy_target(self, facade_for, fake_app):
        report = await facade_for().run_monitoring_tests()

        assert report.healthy
        assert report.issues == []
        assert ("GET", "/auth/callback") in fake_app.requests
        assert ("GET", "/api/user/credits") in fake_app.requests

    async def test_server_error_is_an_issue(self, facade_for, fake_app):
        fake_app.fail[("GET", "/api/clients")] = 503

        report = await facade_for().run_monitoring_tests()

        assert not report.healthy
        assert report.issues == ["Database Connectivity is unhealthy (HTTP 503)"]

    async def test_client_errors_are_not_issues(self, facade_for, fake_app):
        fake_app.fail[("GET", "/api/user/credits")] = 401

        report = await facade_for().run_monitoring_tests()

        assert report.healthy

    async def test_unreachable_target(self, facade_for, fake_app):
        fake_app.offline = True

        report = await facade_for().run_monitoring_tests()

        assert not report.healthy
        assert len(report.issues) == 3
        assert all("check failed" in issue for issue in report.issues)

    async def test_custom_checks(self, facade_for, fake_app):
        report = await facade_for().run_monitoring_tests([HealthCheck("Landing Page", "/", api=False)])

        assert report.healthy
        assert fake_app.requests == [("GET", "/")]


# =============================================================================
# Performance regression
# =============================================================================


class TestPerformanceRegression:
    """Regression check over the performance suite only."""

    async def test_passing_performance_suite(self, facade_for):
        result = await facade_for().run_performance_regression_tests()

        assert result.passed
        assert set(result.metrics) == set(METRIC_SOURCES)

    async def test_failing_performance_suite(self, facade_for):
        result = await facade_for(registry(performance_testing=False)).run_performance_regression_tests()

        assert not result.passed

    async def test_realtime_failures_do_not_count(self, facade_for):
        result = await facade_for(registry(realtime_testing=False)).run_performance_regression_tests()

        assert result.passed

    async def test_missing_performance_suite_passes(self, facade_for):
        result = await facade_for({"api-testing": suite_factory("api-testing", True)}).run_performance_regression_tests()

        assert result == (True, {})


# =============================================================================
# Pipeline
# =============================================================================


class TestPipeline:
    """PRE_DEPLOY -> DEPLOY -> POST_DEPLOY -> DONE."""

    async def test_happy_path(self, facade_for):
        deployed = []

        async def deploy() -> None:
            deployed.append(True)

        outcome = await facade_for().run_ci_pipeline(deploy)

        assert outcome.passed
        assert outcome.exit_code == 0
        assert outcome.history == [
            PipelineStage.PRE_DEPLOY,
            PipelineStage.DEPLOY,
            PipelineStage.POST_DEPLOY,
            PipelineStage.DONE,
        ]
        assert deployed == [True]
        assert outcome.warnings == []

    async def test_pre_deploy_failure_blocks_before_deploy(self, facade_for):
        deployed = []

        async def deploy() -> None:
            deployed.append(True)

        outcome = await facade_for(registry(form_testing=False)).run_ci_pipeline(deploy)

        assert outcome.stage is PipelineStage.BLOCKED
        assert outcome.blocked_at is PipelineStage.PRE_DEPLOY
        assert outcome.exit_code == 1
        assert deployed == []
        assert "Pre-deployment tests failed" in outcome.reason

    async def test_performance_regression_is_only_a_warning(self, facade_for):
        outcome = await facade_for(registry(performance_testing=False)).run_ci_pipeline()

        assert outcome.passed
        assert outcome.warnings == ["Performance regression detected - review recommended"]

    async def test_deploy_failure_blocks(self, facade_for):
        async def deploy() -> None:
            raise RuntimeError("registry unavailable")

        outcome = await facade_for().run_ci_pipeline(deploy)

        assert outcome.blocked_at is PipelineStage.DEPLOY
        assert outcome.reason == "Deployment failed: registry unavailable"
        assert PipelineStage.POST_DEPLOY not in outcome.history

    async def test_post_deploy_failure_blocks(self, facade_for):
        state = {"deployed": False}

        async def deploy() -> None:
            state["deployed"] = True

        factories = registry(api_testing=lambda: not state["deployed"])
        outcome = await facade_for(factories).run_ci_pipeline(deploy)

        assert outcome.blocked_at is PipelineStage.POST_DEPLOY
        assert outcome.reason == "Post-deployment verification failed"
        assert outcome.exit_code == 1


# =============================================================================
# CI artifacts
# =============================================================================


class TestCiArtifacts:
    """Generated script aliases and workflow."""

    def test_package_scripts(self, facade_for):
        scripts = facade_for().generate_package_scripts("ic")

        assert scripts["test:critical"] == "ic run-critical"
        assert scripts["test:pipeline"] == "ic run-pipeline"
        assert len(scripts) == 7

    def test_workflow_template(self, facade_for):
        workflow = facade_for().generate_ci_workflow("ic")

        assert "run: ic run-critical" in workflow
        assert "run: ic run-post-deployment" in workflow
        assert "needs: pre-deployment-tests" in workflow
        assert "${{ secrets.TEST_URL }}" in workflow
        assert "{command}" not in workflow

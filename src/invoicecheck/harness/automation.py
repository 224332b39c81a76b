"""Deployment gates, health monitoring and the CI pipeline built on the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence

import httpx

from invoicecheck.client import InvoiceApiClient
from invoicecheck.harness.models import HarnessError, RunConfig
from invoicecheck.harness.observer import RunObserver
from invoicecheck.harness.orchestrator import (
    ClientFactory,
    MasterOrchestrator,
    critical_failures,
    run_critical_tests_only,
)
from invoicecheck.suites import SuiteFactory
from invoicecheck.suites.performance import SUITE_NAME as PERFORMANCE_SUITE
from invoicecheck.suites.performance import extract_metrics

logger = logging.getLogger(__name__)

POST_DEPLOY_TIMEOUT_MS = 10000
POST_DEPLOY_RETRIES = 1

DeployHook = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class HealthCheck:
    name: str
    path: str
    api: bool = True


MONITORING_CHECKS = (
    HealthCheck("API Health", "/user/credits"),
    HealthCheck("Database Connectivity", "/clients"),
    HealthCheck("Authentication System", "/auth/callback", api=False),
)


@dataclass(frozen=True)
class MonitoringReport:
    healthy: bool
    issues: List[str] = field(default_factory=list)


class RegressionResult(NamedTuple):
    passed: bool
    metrics: Dict[str, float]


class PipelineStage(str, Enum):
    PRE_DEPLOY = "pre_deploy"
    DEPLOY = "deploy"
    POST_DEPLOY = "post_deploy"
    DONE = "done"
    BLOCKED = "blocked"


@dataclass
class PipelineOutcome:
    stage: PipelineStage = PipelineStage.PRE_DEPLOY
    history: List[PipelineStage] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    blocked_at: Optional[PipelineStage] = None
    reason: str = ""
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.stage is PipelineStage.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def advance(self, stage: PipelineStage) -> None:
        self.history.append(stage)
        self.stage = stage

    def block(self, reason: str) -> None:
        self.blocked_at = self.stage
        self.reason = reason
        self.advance(PipelineStage.BLOCKED)


class AutomationFacade:
    """Turns orchestrated runs into deployment gates.

    Every gate builds a fresh ``MasterOrchestrator`` so derived configurations (the faster
    post-deployment policy, for instance) never leak into another run. Gates return booleans
    or outcome objects; exit codes are left to the command line.
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        observer: Optional[RunObserver] = None,
        suite_factories: Optional[Mapping[str, SuiteFactory]] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.config = config or RunConfig()
        self.observer = observer
        self.suite_factories = suite_factories
        self.client_factory: ClientFactory = client_factory or InvoiceApiClient

    def orchestrator(self, config: Optional[RunConfig] = None) -> MasterOrchestrator:
        return MasterOrchestrator(
            config or self.config,
            observer=self.observer,
            suite_factories=self.suite_factories,
            client_factory=self.client_factory,
        )

    def post_deployment_config(self) -> RunConfig:
        return self.config.replace(default_timeout_ms=POST_DEPLOY_TIMEOUT_MS, retry_count=POST_DEPLOY_RETRIES)

    async def run_pre_deployment_tests(self) -> bool:
        logger.info("Running pre-deployment validation tests")
        try:
            return await run_critical_tests_only(orchestrator=self.orchestrator())
        except HarnessError as exc:
            logger.error("Pre-deployment tests failed: %s", exc)
            return False

    async def run_post_deployment_tests(self) -> bool:
        logger.info("Running post-deployment verification tests")
        orchestrator = self.orchestrator(self.post_deployment_config())
        try:
            results = await orchestrator.run_critical()
        except HarnessError as exc:
            logger.error("Post-deployment verification failed: %s", exc)
            return False

        failures = critical_failures(results, orchestrator.aborted_suites)
        for name, count in failures.items():
            logger.error("Post-deployment verification failed in %s: %s tests failed", name, count)
        return not failures

    async def run_monitoring_tests(self, checks: Sequence[HealthCheck] = MONITORING_CHECKS) -> MonitoringReport:
        """Quick reachability checks; a 5xx or a transport error marks the check unhealthy."""
        logger.info("Running continuous monitoring tests")
        async with self.client_factory(self.config) as client:
            outcomes = await asyncio.gather(*(self._health_check(client, check) for check in checks))

        issues = [issue for issue in outcomes if issue]
        if issues:
            logger.warning("Monitoring detected %s issue(s)", len(issues))
            for issue in issues:
                logger.warning("  - %s", issue)
        else:
            logger.info("All monitoring checks passed")
        return MonitoringReport(healthy=not issues, issues=issues)

    async def _health_check(self, client: InvoiceApiClient, check: HealthCheck) -> Optional[str]:
        try:
            response = await client.get(check.path, api=check.api, auth=False)
        except httpx.HTTPError as exc:
            return f"{check.name} check failed: {str(exc) or type(exc).__name__}"
        if response.status_code >= 500:
            return f"{check.name} is unhealthy (HTTP {response.status_code})"
        return None

    async def run_performance_regression_tests(self) -> RegressionResult:
        logger.info("Running performance regression tests")
        orchestrator = self.orchestrator()
        if PERFORMANCE_SUITE not in orchestrator.available_suites():
            logger.warning("No %s suite registered; skipping regression check", PERFORMANCE_SUITE)
            return RegressionResult(passed=True, metrics={})

        results = await orchestrator.run_suite(PERFORMANCE_SUITE)
        aborted = orchestrator.aborted_suites
        suite_results = results.get(PERFORMANCE_SUITE, [])
        cases = orchestrator.suite(PERFORMANCE_SUITE).active_cases()
        metrics = extract_metrics({case.name: result for case, result in zip(cases, suite_results)})
        passed = PERFORMANCE_SUITE not in aborted and all(result.success for result in suite_results)

        if passed:
            logger.info(
                "Performance regression tests passed. Page load: %sms, API: %sms",
                metrics["pageLoadTime"],
                metrics["apiResponseTime"],
            )
        else:
            logger.warning("Performance regression detected")
        return RegressionResult(passed=passed, metrics=metrics)

    async def run_ci_pipeline(self, deploy: Optional[DeployHook] = None) -> PipelineOutcome:
        """PRE_DEPLOY -> DEPLOY -> POST_DEPLOY -> DONE; a failed gate ends in BLOCKED.

        Performance regressions are recorded as warnings and never block. Without a ``deploy``
        hook the target is assumed to be deployed already.
        """
        outcome = PipelineOutcome()
        outcome.advance(PipelineStage.PRE_DEPLOY)
        logger.info("Step 1: pre-deployment validation")
        if not await self.run_pre_deployment_tests():
            outcome.block("Pre-deployment tests failed - blocking deployment")
            logger.error(outcome.reason)
            return outcome

        logger.info("Step 2: performance regression check")
        regression = await self.run_performance_regression_tests()
        outcome.metrics = regression.metrics
        if not regression.passed:
            outcome.warnings.append("Performance regression detected - review recommended")

        outcome.advance(PipelineStage.DEPLOY)
        if deploy is not None:
            logger.info("Step 3: deploying")
            try:
                await deploy()
            except Exception as exc:  # noqa: BLE001 - the deploy hook is external code
                outcome.block(f"Deployment failed: {exc}")
                logger.error(outcome.reason)
                return outcome

        outcome.advance(PipelineStage.POST_DEPLOY)
        logger.info("Step 4: post-deployment verification")
        if not await self.run_post_deployment_tests():
            outcome.block("Post-deployment verification failed")
            logger.error(outcome.reason)
            return outcome

        outcome.advance(PipelineStage.DONE)
        logger.info("CI/CD pipeline completed successfully")
        return outcome

    def generate_package_scripts(self, command: str = "invoicecheck") -> Dict[str, str]:
        """Script aliases mapping project task names onto the command line."""
        return {
            "test:all": f"{command} run-all",
            "test:critical": f"{command} run-critical",
            "test:performance": f"{command} run-performance",
            "test:post-deployment": f"{command} run-post-deployment",
            "test:monitor": f"{command} run-monitor",
            "test:pre-deploy": f"{command} run-pre-deployment",
            "test:pipeline": f"{command} run-pipeline",
        }

    def generate_ci_workflow(self, command: str = "invoicecheck") -> str:
        """GitHub Actions workflow gating deployment on the critical suites."""
        return _WORKFLOW_TEMPLATE.format(command=command)


_WORKFLOW_TEMPLATE = """name: Invoice Platform Testing

on:
  push:
    branches: [ main, develop ]
  pull_request:
    branches: [ main ]

jobs:
  pre-deployment-tests:
    runs-on: ubuntu-latest
    steps:
    - uses: actions/checkout@v4
    - uses: actions/setup-python@v5
      with:
        python-version: '3.11'
    - name: Install harness
      run: pip install invoicecheck
    - name: Run pre-deployment tests
      env:
        INVOICECHECK_BASE_URL: ${{{{ secrets.TEST_URL }}}}
        INVOICECHECK_AUTH_TOKEN: ${{{{ secrets.TEST_AUTH_TOKEN }}}}
      run: {command} run-critical

  post-deployment-tests:
    runs-on: ubuntu-latest
    needs: pre-deployment-tests
    if: github.ref == 'refs/heads/main'
    steps:
    - uses: actions/setup-python@v5
      with:
        python-version: '3.11'
    - name: Install harness
      run: pip install invoicecheck
    - name: Run post-deployment verification
      env:
        INVOICECHECK_BASE_URL: ${{{{ secrets.PRODUCTION_URL }}}}
      run: {command} run-post-deployment

  performance-monitoring:
    runs-on: ubuntu-latest
    if: github.ref == 'refs/heads/main'
    steps:
    - uses: actions/setup-python@v5
      with:
        python-version: '3.11'
    - name: Install harness
      run: pip install invoicecheck
    - name: Run performance regression tests
      env:
        INVOICECHECK_BASE_URL: ${{{{ secrets.PRODUCTION_URL }}}}
      run: {command} run-performance
"""

"""Probe suites for the invoicing platform, keyed by suite name."""

from typing import Callable, Dict

from invoicecheck.client import InvoiceApiClient
from invoicecheck.harness.models import ProbeSuite, RunConfig
from invoicecheck.suites.api import create_api_suite
from invoicecheck.suites.edge_cases import create_edge_case_suite
from invoicecheck.suites.forms import create_form_suite
from invoicecheck.suites.performance import create_performance_suite
from invoicecheck.suites.production import create_production_suite
from invoicecheck.suites.realtime import create_realtime_suite

SuiteFactory = Callable[[RunConfig, InvoiceApiClient], ProbeSuite]

DEFAULT_SUITE_FACTORIES: Dict[str, SuiteFactory] = {
    "form-testing": create_form_suite,
    "api-testing": create_api_suite,
    "production-readiness": create_production_suite,
    "performance-testing": create_performance_suite,
    "realtime-testing": create_realtime_suite,
    "edge-case-testing": create_edge_case_suite,
}

CRITICAL_SUITES = ("form-testing", "api-testing", "production-readiness")
PERFORMANCE_SUITES = ("performance-testing", "realtime-testing")
ROBUSTNESS_SUITES = ("edge-case-testing",)

__all__ = [
    "SuiteFactory",
    "DEFAULT_SUITE_FACTORIES",
    "CRITICAL_SUITES",
    "PERFORMANCE_SUITES",
    "ROBUSTNESS_SUITES",
    "create_api_suite",
    "create_edge_case_suite",
    "create_form_suite",
    "create_performance_suite",
    "create_production_suite",
    "create_realtime_suite",
]

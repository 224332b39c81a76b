"""Probe execution core: models, runner, observers and reporting."""

from invoicecheck.harness.models import (
    HarnessError,
    ProbeCase,
    ProbeResult,
    ProbeSuite,
    RunConfig,
    RunResults,
    SuiteSetupError,
    UnknownSuiteError,
)
from invoicecheck.harness.observer import CapturingObserver, LoggingObserver, RunObserver
from invoicecheck.harness.report import ReadinessTier, ReportGenerator, RunReport
from invoicecheck.harness.runner import TestRunner

__all__ = [
    "HarnessError",
    "ProbeCase",
    "ProbeResult",
    "ProbeSuite",
    "RunConfig",
    "RunResults",
    "SuiteSetupError",
    "UnknownSuiteError",
    "CapturingObserver",
    "LoggingObserver",
    "RunObserver",
    "ReadinessTier",
    "ReportGenerator",
    "RunReport",
    "TestRunner",
]

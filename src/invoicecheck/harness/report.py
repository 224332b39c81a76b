"""Aggregate run results into a scored readiness report."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from invoicecheck.harness.models import SuiteRunResult

logger = logging.getLogger(__name__)


class ReadinessTier(str, Enum):
    PRODUCTION_READY = "production_ready"
    MOSTLY_READY = "mostly_ready"
    NEEDS_WORK = "needs_work"
    NOT_READY = "not_ready"

    @property
    def headline(self) -> str:
        return _TIER_HEADLINES[self]


_TIER_HEADLINES = {
    ReadinessTier.PRODUCTION_READY: (
        "🟢 **PRODUCTION READY** - All systems green! The platform is ready for production deployment."
    ),
    ReadinessTier.MOSTLY_READY: (
        "🟡 **MOSTLY READY** - The platform is largely ready but has some minor issues that should be addressed."
    ),
    ReadinessTier.NEEDS_WORK: (
        "🟠 **NEEDS WORK** - Several issues need to be resolved before production deployment."
    ),
    ReadinessTier.NOT_READY: (
        "🔴 **NOT READY** - Critical issues must be resolved. Do not deploy to production."
    ),
}

# suite name -> (priority, recommendation); order is the order recommendations are emitted
SUITE_RECOMMENDATIONS = (
    ("production-readiness", "critical", "🔴 **Critical**: Fix production readiness issues before deployment"),
    ("api-testing", "high", "🟠 **High Priority**: Resolve API integration issues"),
    ("form-testing", "high", "🟠 **High Priority**: Repair invoice and client form flows"),
    ("performance-testing", "medium", "🟡 **Medium Priority**: Optimize performance bottlenecks"),
    ("realtime-testing", "medium", "🟡 **Medium Priority**: Resolve data synchronization issues between views"),
    ("edge-case-testing", "low", "🔵 **Low Priority**: Address edge case handling for better robustness"),
)

NO_ISSUES_RECOMMENDATION = (
    "🎉 **Excellent!** No major issues detected. Consider minor optimizations for enhanced performance."
)


def readiness_tier(success_rate: float, failed: int) -> ReadinessTier:
    rate = round(success_rate, 1)
    if rate >= 95 and failed == 0:
        return ReadinessTier.PRODUCTION_READY
    if rate >= 85 and failed <= 3:
        return ReadinessTier.MOSTLY_READY
    if rate >= 70:
        return ReadinessTier.NEEDS_WORK
    return ReadinessTier.NOT_READY


@dataclass(frozen=True)
class Recommendation:
    priority: str
    suite: str
    text: str


@dataclass(frozen=True)
class SuiteSummary:
    name: str
    total: int
    passed: int
    failed: int
    success_rate: float
    duration_ms: int
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class RunReport:
    generated_at: str
    environment: str
    base_url: str
    suites: List[SuiteSummary]
    total: int
    passed: int
    failed: int
    success_rate: float
    duration_ms: int
    tier: ReadinessTier
    recommendations: List[Recommendation]
    aborted_suites: Dict[str, str] = field(default_factory=dict)

    @property
    def production_ready(self) -> bool:
        return self.tier is ReadinessTier.PRODUCTION_READY

    def suite(self, name: str) -> Optional[SuiteSummary]:
        for summary in self.suites:
            if summary.name == name:
                return summary
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["tier"] = self.tier.value
        return payload


class ReportGenerator:
    """Build ``RunReport`` objects and render them as Markdown."""

    def __init__(self, environment: str = "development", base_url: str = "http://localhost:3000") -> None:
        self.environment = environment
        self.base_url = base_url

    def generate(
        self,
        results: Mapping[str, SuiteRunResult],
        aborted_suites: Optional[Mapping[str, str]] = None,
    ) -> RunReport:
        aborted = dict(aborted_suites or {})
        summaries = [self._summarize_suite(name, suite_results) for name, suite_results in results.items()]

        total = sum(summary.total for summary in summaries)
        passed = sum(summary.passed for summary in summaries)
        failed = sum(summary.failed for summary in summaries)
        duration = sum(summary.duration_ms for summary in summaries)
        rate = (passed / total * 100) if total else 0.0

        tier = readiness_tier(rate, failed + len(aborted))
        report = RunReport(
            generated_at=datetime.now(timezone.utc).isoformat(),
            environment=self.environment,
            base_url=self.base_url,
            suites=summaries,
            total=total,
            passed=passed,
            failed=failed,
            success_rate=rate,
            duration_ms=duration,
            tier=tier,
            recommendations=self._recommendations(summaries, aborted),
            aborted_suites=aborted,
        )
        logger.info(
            "Report generated: %s/%s passed (%.1f%%), tier=%s", passed, total, rate, tier.value
        )
        return report

    def _summarize_suite(self, name: str, results: SuiteRunResult) -> SuiteSummary:
        passed = len([result for result in results if result.success])
        total = len(results)
        return SuiteSummary(
            name=name,
            total=total,
            passed=passed,
            failed=total - passed,
            success_rate=(passed / total * 100) if total else 0.0,
            duration_ms=sum(result.duration_ms for result in results),
            results=[result.to_dict() for result in results],
        )

    def _recommendations(self, summaries: List[SuiteSummary], aborted: Mapping[str, str]) -> List[Recommendation]:
        failing = {summary.name for summary in summaries if summary.failed}
        recommendations: List[Recommendation] = []

        for suite_name, reason in aborted.items():
            recommendations.append(
                Recommendation(
                    priority="critical",
                    suite=suite_name,
                    text=f"🔴 **Critical**: Suite `{suite_name}` aborted during setup ({reason})",
                )
            )

        for suite_name, priority, text in SUITE_RECOMMENDATIONS:
            if suite_name in failing:
                recommendations.append(Recommendation(priority=priority, suite=suite_name, text=text))

        if not recommendations:
            recommendations.append(Recommendation(priority="none", suite="", text=NO_ISSUES_RECOMMENDATION))
        return recommendations

    # ------------------------------------------------------------------
    # Markdown
    # ------------------------------------------------------------------
    def render_markdown(self, report: RunReport) -> str:
        lines: List[str] = [
            "# 🧪 Invoice Platform Test Report",
            "",
            f"**Generated**: {report.generated_at}  ",
            f"**Environment**: {report.environment}  ",
            f"**Base URL**: {report.base_url}",
            "",
            "## 📈 Overall Summary",
            "",
            f"- **Total Test Suites**: {len(report.suites)}",
            f"- **Total Tests**: {report.total}",
            f"- **Passed**: {report.passed} ✅",
            f"- **Failed**: {report.failed} ❌",
            f"- **Success Rate**: {report.success_rate:.1f}%",
            f"- **Total Duration**: {round(report.duration_ms / 1000)}s",
        ]
        if report.aborted_suites:
            lines.append(f"- **Aborted Suites**: {', '.join(report.aborted_suites)}")

        lines.extend(["", "## 🎯 Test Results by Category", ""])
        for summary in report.suites:
            lines.extend(self._suite_markdown(summary))

        lines.extend(
            [
                "## 🚀 Production Readiness Assessment",
                "",
                report.tier.headline,
                "",
                "## 🔧 Recommendations",
                "",
            ]
        )
        lines.extend(recommendation.text for recommendation in report.recommendations)
        lines.extend(["", "---", "", "*Generated by Invoice Platform Testing Framework*", ""])
        return "\n".join(lines)

    def _suite_markdown(self, summary: SuiteSummary) -> List[str]:
        lines = [
            f"## {summary.name.replace('-', ' ').upper()}",
            "",
            f"- **Tests**: {summary.total}",
            f"- **Passed**: {summary.passed} ✅",
            f"- **Failed**: {summary.failed} ❌",
            f"- **Success Rate**: {summary.success_rate:.1f}%",
            f"- **Duration**: {summary.duration_ms}ms",
            "",
            "### Test Results:",
        ]
        for index, result in enumerate(summary.results, start=1):
            icon = "✅" if result["success"] else "❌"
            lines.append(f"{index}. {icon} {result['message']} ({result['duration_ms']}ms)")

        lines.extend(["", "### Failed Tests:"])
        failures = [result for result in summary.results if not result["success"]]
        if not failures:
            lines.append("None 🎉")
        for result in failures:
            error = result.get("error")
            suffix = f": {error['message']}" if error and error["message"] != result["message"] else ""
            lines.append(f"- ❌ {result['message']}{suffix}")
        lines.append("")
        return lines

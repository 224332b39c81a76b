"""Tests for readiness scoring, recommendations and Markdown rendering."""

import pytest

from invoicecheck.harness import ProbeResult, ReadinessTier, ReportGenerator
from invoicecheck.harness.report import NO_ISSUES_RECOMMENDATION, readiness_tier


def results_of(passed: int, failed: int = 0):
    return [ProbeResult(success=True, message=f"ok {index}", duration_ms=10) for index in range(passed)] + [
        ProbeResult(success=False, message=f"broken {index}", duration_ms=5) for index in range(failed)
    ]


@pytest.fixture
def generator():
    return ReportGenerator(environment="staging", base_url="https://invoices.test")


class TestReadinessTier:
    """Tier boundaries."""

    @pytest.mark.parametrize(
        "rate, failed, tier",
        [
            (100.0, 0, ReadinessTier.PRODUCTION_READY),
            (95.0, 0, ReadinessTier.PRODUCTION_READY),
            (97.0, 1, ReadinessTier.MOSTLY_READY),
            (85.0, 3, ReadinessTier.MOSTLY_READY),
            (90.0, 4, ReadinessTier.NEEDS_WORK),
            (70.0, 9, ReadinessTier.NEEDS_WORK),
            (69.9, 1, ReadinessTier.NOT_READY),
            (0.0, 0, ReadinessTier.NOT_READY),
        ],
    )
    def test_boundaries(self, rate, failed, tier):
        assert readiness_tier(rate, failed) is tier

    def test_rate_is_rounded_to_one_decimal(self):
        """94.96% displays as 95.0% and scores the same way."""
        assert readiness_tier(94.96, 0) is ReadinessTier.PRODUCTION_READY


class TestGenerate:
    """Aggregation into a RunReport."""

    def test_all_green_is_production_ready(self, generator):
        report = generator.generate({"api-testing": results_of(8), "form-testing": results_of(6)})

        assert report.total == 14
        assert report.passed == 14
        assert report.success_rate == 100.0
        assert report.production_ready
        assert [rec.text for rec in report.recommendations] == [NO_ISSUES_RECOMMENDATION]

    def test_one_failing_critical_check_blocks_readiness(self, generator):
        """Everything else green, one production check failing: not production ready."""
        report = generator.generate(
            {
                "form-testing": results_of(6),
                "api-testing": results_of(8),
                "production-readiness": results_of(7, failed=1),
            }
        )

        assert not report.production_ready
        assert report.tier is ReadinessTier.MOSTLY_READY
        assert report.recommendations[0].priority == "critical"
        assert report.recommendations[0].suite == "production-readiness"

    def test_suite_summaries(self, generator):
        report = generator.generate({"edge-case-testing": results_of(3, failed=1)})

        summary = report.suite("edge-case-testing")
        assert (summary.total, summary.passed, summary.failed) == (4, 3, 1)
        assert summary.success_rate == 75.0
        assert summary.duration_ms == 35
        assert report.suite("missing") is None

    def test_recommendations_follow_priority_order(self, generator):
        report = generator.generate(
            {
                "edge-case-testing": results_of(1, failed=1),
                "performance-testing": results_of(1, failed=1),
                "api-testing": results_of(1, failed=1),
            }
        )

        assert [rec.priority for rec in report.recommendations] == ["high", "medium", "low"]
        assert [rec.suite for rec in report.recommendations] == [
            "api-testing",
            "performance-testing",
            "edge-case-testing",
        ]

    def test_aborted_suite_blocks_readiness(self, generator):
        """A suite that never ran counts against readiness."""
        report = generator.generate({"api-testing": results_of(8)}, {"form-testing": "setup exploded"})

        assert report.success_rate == 100.0
        assert not report.production_ready
        assert report.aborted_suites == {"form-testing": "setup exploded"}
        assert "setup exploded" in report.recommendations[0].text

    def test_empty_run_is_not_ready(self, generator):
        report = generator.generate({})

        assert report.total == 0
        assert report.tier is ReadinessTier.NOT_READY

    def test_to_dict_is_plain_data(self, generator):
        payload = generator.generate({"api-testing": results_of(1)}).to_dict()

        assert payload["tier"] == "production_ready"
        assert payload["suites"][0]["name"] == "api-testing"
        assert payload["environment"] == "staging"


class TestMarkdown:
    """Rendered report."""

    def test_sections_and_counts(self, generator):
        report = generator.generate({"api-testing": results_of(2, failed=1)})

        markdown = generator.render_markdown(report)

        assert "# 🧪 Invoice Platform Test Report" in markdown
        assert "**Environment**: staging" in markdown
        assert "## 📈 Overall Summary" in markdown
        assert "- **Success Rate**: 66.7%" in markdown
        assert "## API TESTING" in markdown
        assert "3. ❌ broken 0 (5ms)" in markdown
        assert "- ❌ broken 0" in markdown
        assert ReadinessTier.NOT_READY.headline in markdown

    def test_no_failures_line(self, generator):
        markdown = generator.render_markdown(generator.generate({"form-testing": results_of(2)}))

        assert "None 🎉" in markdown
        assert "🟢 **PRODUCTION READY**" in markdown

    def test_aborted_suites_listed(self, generator):
        report = generator.generate({}, {"production-readiness": "no route to host"})

        markdown = generator.render_markdown(report)

        assert "- **Aborted Suites**: production-readiness" in markdown

    def test_error_detail_appended_when_distinct(self, generator):
        result = ProbeResult(success=False, message="Upload failed", error=ConnectionError("reset by peer"))

        markdown = generator.render_markdown(generator.generate({"api-testing": [result]}))

        assert "- ❌ Upload failed: reset by peer" in markdown

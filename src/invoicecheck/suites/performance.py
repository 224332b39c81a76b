"""Performance suite: page-load, API, PDF, search latency and memory retention."""

from __future__ import annotations

import asyncio
import gc
import json
import logging
import tracemalloc
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from invoicecheck.client import InvoiceApiClient, json_or_none
from invoicecheck.harness.models import ProbeCase, ProbeResult, ProbeSuite, RunConfig
from invoicecheck.suites.common import average, mock_client, mock_invoice, mock_items, probe, ratio

logger = logging.getLogger(__name__)

SUITE_NAME = "performance-testing"

MIB = 1024 * 1024

PAGE_THRESHOLDS_MS = {"excellent": 1000, "good": 2000, "acceptable": 3000, "poor": 5000}

PAGES: Sequence[Tuple[str, str]] = (
    ("Dashboard", "/dashboard"),
    ("Invoices List", "/dashboard/invoices"),
    ("New Invoice", "/dashboard/invoices/new"),
    ("Clients List", "/dashboard/clients"),
    ("New Client", "/dashboard/clients/new"),
    ("Settings", "/dashboard/settings"),
    ("Profile", "/dashboard/settings/profile"),
    ("Login", "/login"),
)


@dataclass(frozen=True)
class TimedEndpoint:
    name: str
    method: str
    path: str
    threshold_ms: int
    resource: Optional[str] = None
    params: Optional[Dict[str, str]] = None


API_ENDPOINTS: Sequence[TimedEndpoint] = (
    TimedEndpoint("List Invoices", "GET", "/invoices", 500),
    TimedEndpoint("List Clients", "GET", "/clients", 500),
    TimedEndpoint("User Credits", "GET", "/user/credits", 200),
    TimedEndpoint("Search Clients", "GET", "/clients/search", 1000, params={"q": "test"}),
    TimedEndpoint("Create Invoice", "POST", "/invoices", 1000, resource="invoices"),
    TimedEndpoint("Create Client", "POST", "/clients", 800, resource="clients"),
)

# (name, item count, expected generation time)
PDF_SCENARIOS: Sequence[Tuple[str, int, int]] = (
    ("Simple Invoice", 1, 3000),
    ("Medium Invoice", 5, 5000),
    ("Complex Invoice", 20, 8000),
)

# (name, query, threshold)
SEARCH_SCENARIOS: Sequence[Tuple[str, str, int]] = (
    ("Client Name Search", "test", 200),
    ("Client Email Search", "@example.com", 300),
    ("Georgian Text Search", "ტესტი", 400),
    ("Partial Match Search", "tes", 500),
    ("Empty Search", "", 100),
    ("Special Characters", "!@#$%", 200),
)

# headline metric -> (probe name, data key)
METRIC_SOURCES: Mapping[str, Tuple[str, str]] = {
    "pageLoadTime": ("Page Load Performance", "averageLoadTime"),
    "apiResponseTime": ("API Response Performance", "averageResponseTime"),
    "pdfGenerationTime": ("PDF Generation Performance", "averageGenerationTime"),
    "searchTime": ("Search Performance", "averageSearchTime"),
    "memoryUsage": ("Memory Usage Monitoring", "totalIncrease"),
}


def rate_load_time(load_time_ms: int) -> str:
    if load_time_ms < PAGE_THRESHOLDS_MS["excellent"]:
        return "excellent"
    if load_time_ms < PAGE_THRESHOLDS_MS["good"]:
        return "good"
    if load_time_ms < PAGE_THRESHOLDS_MS["acceptable"]:
        return "acceptable"
    return "poor"


def extract_metrics(named_results: Mapping[str, ProbeResult]) -> Dict[str, float]:
    """Pull headline timings out of performance probe payloads; missing values are -1."""
    metrics: Dict[str, float] = {}
    for metric, (probe_name, key) in METRIC_SOURCES.items():
        result = named_results.get(probe_name)
        value = (result.data or {}).get(key) if result is not None else None
        metrics[metric] = float(value) if isinstance(value, (int, float)) else -1.0
    return metrics


def _large_data_processing() -> int:
    rows = [{"id": index, "name": f"Item {index}", "data": [f"data-{index}"] * 100} for index in range(10000)]
    processed = [dict(row, processed=True) for row in rows]
    return len(processed)


def _string_manipulation() -> int:
    text = "".join(
        f"This is test string number {index} with some additional content to make it longer. "
        for index in range(10000)
    )
    return len(" ".join(word.upper() for word in text.split(" ") if len(word) > 3))


def _invoice_serialization() -> int:
    batch = [mock_invoice(f"client-{index}", items=mock_items(10)) for index in range(500)]
    return len(json.dumps(batch, ensure_ascii=False))


MEMORY_OPERATIONS: Sequence[Tuple[str, Callable[[], int]]] = (
    ("Large Data Processing", _large_data_processing),
    ("String Manipulation", _string_manipulation),
    ("Invoice Serialization", _invoice_serialization),
)


def measure_memory(operations: Sequence[Tuple[str, Callable[[], int]]] = MEMORY_OPERATIONS) -> Dict[str, Any]:
    """Run heavy operations under ``tracemalloc`` and report post-GC retained growth.

    Operations run synchronously so no other coroutine allocates between the
    before and after snapshots.
    """
    started_here = not tracemalloc.is_tracing()
    if started_here:
        tracemalloc.start()
    try:
        gc.collect()
        initial, _ = tracemalloc.get_traced_memory()
        results: List[Dict[str, Any]] = []
        for name, operation in operations:
            gc.collect()
            before, _ = tracemalloc.get_traced_memory()
            tracemalloc.reset_peak()
            operation()
            current, peak = tracemalloc.get_traced_memory()
            gc.collect()
            after_gc, _ = tracemalloc.get_traced_memory()
            retained = after_gc - before
            results.append(
                {
                    "test": name,
                    "memoryDelta": (current - before) / MIB,
                    "peakDelta": (peak - before) / MIB,
                    "memoryLeakage": retained / MIB,
                    "hasMemoryLeak": retained > MIB,
                }
            )
        final, _ = tracemalloc.get_traced_memory()
    finally:
        if started_here:
            tracemalloc.stop()

    total_increase = (final - initial) / MIB
    return {
        "initialMemory": initial / MIB,
        "finalMemory": final / MIB,
        "totalIncrease": total_increase,
        "testResults": results,
        "hasLeaks": any(result["hasMemoryLeak"] for result in results),
        "efficient": total_increase < 50,
    }


class PerformanceProbes:
    def __init__(self, client: InvoiceApiClient) -> None:
        self.client = client
        # memory measurement blocks the event loop, so it must never overlap a timed request
        self._measuring = asyncio.Lock()

    async def _timed(self, method: str, path: str, **kwargs: Any) -> Tuple[Optional[httpx.Response], int]:
        try:
            async with self._measuring:
                return await self.client.timed(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.debug("%s %s failed: %s", method, path, exc)
            return None, -1

    @probe("Page load time measurement")
    async def page_load_times(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for name, path in PAGES:
            response, load_time = await self._timed(
                "GET",
                path,
                api=False,
                headers={
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Cache-Control": "no-cache",
                },
            )
            if response is None:
                results.append({"page": name, "loadTime": -1, "rating": "error", "success": False})
                continue
            results.append(
                {
                    "page": name,
                    "loadTime": load_time,
                    "rating": rate_load_time(load_time),
                    "success": response.is_success and load_time < PAGE_THRESHOLDS_MS["poor"],
                }
            )

        successful = len([result for result in results if result["success"]])
        avg_load = average([result["loadTime"] for result in results if result["loadTime"] >= 0])
        breakdown = {
            rating: len([result for result in results if result["rating"] == rating]) for rating in PAGE_THRESHOLDS_MS
        }
        return ProbeResult(
            success=successful >= len(PAGES) * 0.8,
            message=(
                f"Page load performance: {successful}/{len(PAGES)} pages loaded, avg {round(avg_load)}ms "
                f"({breakdown['excellent']} excellent, {breakdown['good']} good)"
            ),
            data={
                "results": results,
                "averageLoadTime": avg_load,
                "successRate": ratio(successful, len(PAGES)),
                "performanceBreakdown": breakdown,
            },
        )

    @probe("API response time measurement")
    async def api_response_times(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        created: List[Tuple[str, str]] = []
        try:
            for endpoint in API_ENDPOINTS:
                body = None
                if endpoint.resource == "invoices":
                    body = mock_invoice("perf-test-client", prefix="PERF")
                elif endpoint.resource == "clients":
                    body = mock_client("Performance Test Client")
                response, elapsed = await self._timed(
                    endpoint.method, endpoint.path, json=body, params=endpoint.params
                )
                ok = response is not None and response.is_success
                if ok and endpoint.resource:
                    record = json_or_none(response)
                    if isinstance(record, dict) and record.get("id"):
                        created.append((endpoint.resource, record["id"]))
                results.append(
                    {
                        "endpoint": endpoint.name,
                        "responseTime": elapsed,
                        "threshold": endpoint.threshold_ms,
                        "success": ok,
                        "withinThreshold": ok and 0 <= elapsed < endpoint.threshold_ms,
                        "status": response.status_code if response is not None else None,
                    }
                )
        finally:
            for resource, record_id in created:
                await self.client.discard(resource, record_id)

        total = len(API_ENDPOINTS)
        successful = len([result for result in results if result["success"]])
        within = len([result for result in results if result["withinThreshold"]])
        avg_time = average([result["responseTime"] for result in results if result["responseTime"] >= 0])
        return ProbeResult(
            success=successful >= total * 0.8 and within >= total * 0.7,
            message=(
                f"API performance: {successful}/{total} success, {within} within threshold, "
                f"avg {round(avg_time)}ms"
            ),
            data={
                "results": results,
                "averageResponseTime": avg_time,
                "successRate": ratio(successful, total),
                "thresholdRate": ratio(within, total),
            },
        )

    @probe("PDF generation time measurement")
    async def pdf_generation_times(self) -> ProbeResult:
        invoice = await self.client.create("invoices", mock_invoice("perf-test-client", prefix="PERF"))
        if not invoice or not invoice.get("id"):
            return ProbeResult(
                success=False,
                message="PDF generation time measurement failed: could not create a test invoice",
            )
        invoice_id = invoice["id"]

        results: List[Dict[str, Any]] = []
        try:
            for name, item_count, expected_ms in PDF_SCENARIOS:
                items = mock_items(item_count, description="Test Item")
                update, _ = await self._timed("PATCH", f"/invoices/{invoice_id}", json={"items": items})
                if update is None or not update.is_success:
                    results.append(
                        {"test": name, "generationTime": -1, "success": False, "withinExpected": False, "fileSize": 0}
                    )
                    continue
                response, generation_time = await self._timed("GET", f"/invoices/{invoice_id}/pdf")
                size = len(response.content) if response is not None and response.is_success else 0
                results.append(
                    {
                        "test": name,
                        "items": item_count,
                        "generationTime": generation_time,
                        "success": size > 0,
                        "withinExpected": 0 <= generation_time < expected_ms,
                        "fileSize": size,
                    }
                )
        finally:
            await self.client.discard("invoices", invoice_id)

        total = len(PDF_SCENARIOS)
        successful = len([result for result in results if result["success"]])
        within = len([result for result in results if result["withinExpected"]])
        avg_time = average([result["generationTime"] for result in results if result["generationTime"] >= 0])
        return ProbeResult(
            success=successful >= total * 0.8,
            message=(
                f"PDF generation: {successful}/{total} success, {within} within expected time, "
                f"avg {round(avg_time)}ms"
            ),
            data={"results": results, "averageGenerationTime": avg_time, "successRate": ratio(successful, total)},
        )

    @probe("Search performance measurement")
    async def search_performance(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for name, query, threshold in SEARCH_SCENARIOS:
            response, search_time = await self._timed(
                "GET", "/clients/search", params={"q": query}, headers={"Cache-Control": "no-cache"}
            )
            ok = response is not None and response.is_success
            body = json_or_none(response) if ok else None
            if isinstance(body, dict):
                body = body.get("clients", body.get("data"))
            results.append(
                {
                    "scenario": name,
                    "searchTime": search_time,
                    "success": ok,
                    "withinThreshold": ok and 0 <= search_time < threshold,
                    "resultCount": len(body) if isinstance(body, list) else 0,
                }
            )

        total = len(SEARCH_SCENARIOS)
        successful = len([result for result in results if result["success"]])
        within = len([result for result in results if result["withinThreshold"]])
        avg_time = average([result["searchTime"] for result in results if result["searchTime"] >= 0])
        return ProbeResult(
            success=successful >= total * 0.8,
            message=(
                f"Search performance: {successful}/{total} success, {within} within threshold, "
                f"avg {round(avg_time)}ms"
            ),
            data={
                "results": results,
                "averageSearchTime": avg_time,
                "successRate": ratio(successful, total),
                "thresholdRate": ratio(within, total),
            },
        )

    @probe("Memory usage monitoring")
    async def memory_usage(self) -> ProbeResult:
        async with self._measuring:
            report = measure_memory()
        success = not report["hasLeaks"] and report["efficient"]
        return ProbeResult(
            success=success,
            message=(
                f"Memory usage: {report['totalIncrease']:.2f}MB increase, "
                f"{'leaks detected' if report['hasLeaks'] else 'no major leaks'}"
            ),
            data=report,
        )

    @probe("Comprehensive performance test")
    async def comprehensive(self) -> ProbeResult:
        categories = (
            ("Page Load Times", "Page Load Performance", self.page_load_times),
            ("API Response Times", "API Response Performance", self.api_response_times),
            ("PDF Generation", "PDF Generation Performance", self.pdf_generation_times),
            ("Search Performance", "Search Performance", self.search_performance),
            ("Memory Usage", "Memory Usage Monitoring", self.memory_usage),
        )
        category_results: List[Dict[str, Any]] = []
        by_probe: Dict[str, ProbeResult] = {}
        for category, probe_name, run in categories:
            result = await run()
            by_probe[probe_name] = result
            category_results.append(
                {
                    "category": category,
                    "success": result.success,
                    "message": result.message,
                    "duration": result.duration_ms,
                }
            )

        passed = len([result for result in category_results if result["success"]])
        total_time = sum(result["duration"] for result in category_results)
        return ProbeResult(
            success=passed >= len(categories) * 0.8,
            message=(
                f"Performance overview: {passed}/{len(categories)} categories passed, "
                f"total test time {total_time}ms"
            ),
            data={
                "categoryResults": category_results,
                "metrics": extract_metrics(by_probe),
                "overallPerformance": {
                    "successRate": ratio(passed, len(categories)),
                    "totalTestDuration": total_time,
                },
            },
        )


def create_performance_suite(config: RunConfig, client: InvoiceApiClient) -> ProbeSuite:
    probes = PerformanceProbes(client)
    return ProbeSuite(
        name=SUITE_NAME,
        title="Performance Testing",
        setup=client.open,
        teardown=client.close,
        cases=[
            ProbeCase("Page Load Performance", probes.page_load_times, timeout_ms=30000),
            ProbeCase("API Response Performance", probes.api_response_times, timeout_ms=20000),
            ProbeCase("PDF Generation Performance", probes.pdf_generation_times, timeout_ms=30000),
            ProbeCase("Search Performance", probes.search_performance, timeout_ms=15000),
            ProbeCase("Memory Usage Monitoring", probes.memory_usage, timeout_ms=20000),
            ProbeCase("Comprehensive Performance Test", probes.comprehensive, timeout_ms=120000),
        ],
    )

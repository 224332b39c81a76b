"""Edge-case suite: credit exhaustion, hostile uploads, bulk load, Unicode and boundary values."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from invoicecheck.client import InvoiceApiClient, json_or_none, text_or_empty
from invoicecheck.harness.models import ProbeCase, ProbeResult, ProbeSuite, RunConfig
from invoicecheck.suites.common import (
    average,
    is_rejection,
    iso_days_from_now,
    mock_client,
    money_close,
    probe,
    round_money,
    stored_inertly,
    unique_suffix,
)

logger = logging.getLogger(__name__)

SUITE_NAME = "edge-case-testing"

OVERSIZED_UPLOAD_BYTES = 50 * 1024 * 1024
BULK_BATCH_SIZE = 100

MALICIOUS_UPLOADS: Sequence[Tuple[str, str]] = (
    ("virus.exe", "application/x-msdownload"),
    ("script.js", "application/javascript"),
    ("huge.txt", "text/plain"),
    ("test.php", "application/x-php"),
    ("empty", "application/octet-stream"),
)

_UPLOAD_BODIES = {
    "virus.exe": b"MZ\x90\x00",
    "script.js": b'alert("xss")',
    "test.php": b'<?php system($_GET["cmd"]); ?>',
    "empty": b"",
}

# (name, text, injection-shaped)
SPECIAL_TEXTS: Sequence[Tuple[str, str, bool]] = (
    ("Georgian Unicode", "ანგარიში № 123 - სატესტო კომპანია ჯ.ას.", False),
    ("Emojis", "Invoice 🧾 from Company 🏢 - Total: 💰 100₾", False),
    ("Mathematical Symbols", "Quantity: ∑(1×2) = 2 ± 0.01 ∞", False),
    ("Currency Symbols", "€100 + $50 + £30 + ¥200 + ₾150", False),
    ("HTML/XML Characters", '<script>alert("xss")</script> & <b>bold</b>', True),
    ("SQL Injection", "'; DROP TABLE invoices; --", True),
    ("Long Text", "ა" * 1000, False),
    ("Mixed Scripts", "Invoice ანგარიში नंबर номер 123", False),
    ("Zero Width Characters", "Invisible\u200b\u200c\u200d\ufeffcharacters", False),
    ("Newlines and Tabs", "Line 1\nLine 2\tTabbed\r\nWindows line", False),
    ("Right-to-Left Text", "חשבונית מס׳ 123 - فاتورة رقم 123", False),
    ("Combining Marks", "Cafe\u0301 Re\u0301sume\u0301 n\u0303 a\u030a", False),
)
UNICODE_TAGS = ("Georgian", "Emoji", "Currency", "Right-to-Left", "Combining")


@dataclass(frozen=True)
class DateScenario:
    name: str
    issue_date: str
    due_date: str
    should_reject: bool


def date_scenarios() -> List[DateScenario]:
    return [
        DateScenario("Due Date Before Issue Date", "2025-01-15T00:00:00Z", "2025-01-10T00:00:00Z", True),
        DateScenario("Issue Date in Future", iso_days_from_now(7), iso_days_from_now(14), False),
        DateScenario("Very Old Issue Date", "1999-01-01T00:00:00Z", "1999-01-31T00:00:00Z", False),
        DateScenario("Invalid Date Format", "not-a-date", "also-not-a-date", True),
    ]


@dataclass(frozen=True)
class AmountScenario:
    name: str
    amount: Optional[float]
    should_work: bool
    check_value: bool = False


# NaN has no JSON representation; it goes over the wire as null, as a browser would send it.
AMOUNT_SCENARIOS: Sequence[AmountScenario] = (
    AmountScenario("Large Amount (1 Million)", 1_000_000, True),
    AmountScenario("Very Large Amount (1 Billion)", 1_000_000_000, True),
    AmountScenario("Floating Point Precision", 99.99, True, check_value=True),
    AmountScenario("Many Decimal Places", 123.456789, True, check_value=True),
    AmountScenario("Negative Amount", -100, False),
    AmountScenario("Zero Amount", 0, False),
    AmountScenario("NaN Amount", None, False),
)


class EdgeCaseProbes:
    def __init__(self, client: InvoiceApiClient) -> None:
        self.client = client

    def _invoice_payload(self, **fields: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "clientId": "test-client",
            "invoiceNumber": f"INV-EDGE-{unique_suffix()}",
            "issueDate": iso_days_from_now(0),
            "dueDate": iso_days_from_now(7),
            "vatRate": 0,
            "items": [{"description": "Edge case item", "quantity": 1, "unitPrice": 100}],
        }
        payload.update(fields)
        return payload

    async def _discard_created(self, resource: str, response: httpx.Response) -> None:
        if response.is_success:
            body = json_or_none(response)
            if isinstance(body, dict):
                await self.client.discard(resource, body.get("id"))

    @probe("Zero credit scenario test")
    async def zero_credits(self) -> ProbeResult:
        credits_response = await self.client.get("/user/credits")
        credits = (json_or_none(credits_response) or {}).get("credits", 0) if credits_response.is_success else 0

        response = await self.client.post(
            "/invoices",
            json=self._invoice_payload(total=100),
            headers={"X-Credits": "0"},
        )
        await self._discard_created("invoices", response)

        rejected = response.status_code in (400, 402)
        error_message = text_or_empty(response) if rejected else ""
        explained = "credit" in error_message.lower() or "insufficient" in error_message.lower()
        return ProbeResult(
            success=rejected and explained,
            message=(
                f"Zero credit scenario: Request {'properly rejected' if rejected else 'incorrectly accepted'}, "
                f"Error handling {'good' if explained else 'poor'}"
            ),
            data={
                "requestRejected": rejected,
                "errorHandling": explained,
                "responseStatus": response.status_code,
                "errorMessage": error_message,
                "currentCredits": credits,
            },
        )

    @probe("Invalid file upload test")
    async def malicious_uploads(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for filename, content_type in MALICIOUS_UPLOADS:
            content = _UPLOAD_BODIES[filename] if filename in _UPLOAD_BODIES else b"a" * OVERSIZED_UPLOAD_BYTES
            try:
                response = await self.client.upload("/upload/avatar", filename, content, content_type)
            except httpx.HTTPError as exc:
                results.append(
                    {"file": filename, "success": True, "message": f"Network error (considered safe): {exc}"}
                )
                continue
            rejected = is_rejection(response)
            if response.is_success:
                message = "SECURITY RISK: Malicious file accepted!"
            elif rejected:
                message = f"Correctly rejected: {response.status_code}"
            else:
                message = f"Server error while rejecting: {response.status_code}"
            results.append({"file": filename, "success": rejected, "message": message})

        blocked = len([result for result in results if result["success"]])
        risks = len(results) - blocked
        return ProbeResult(
            success=risks == 0,
            message=f"File upload security: {blocked}/{len(results)} malicious files blocked, {risks} security risks",
            data={"results": results, "securityPassed": blocked, "securityRisks": risks},
        )

    async def _bulk_client_creation(self) -> Dict[str, Any]:
        start = time.perf_counter()
        payloads = [mock_client(f"Bulk Client {index}") for index in range(BULK_BATCH_SIZE)]
        responses = await asyncio.gather(
            *(self.client.post("/clients", json=payload) for payload in payloads),
            return_exceptions=True,
        )
        duration = int(round((time.perf_counter() - start) * 1000))
        ok = [response for response in responses if isinstance(response, httpx.Response) and response.is_success]
        await asyncio.gather(*(self._discard_created("clients", response) for response in ok))
        return {
            "success": len(ok) > BULK_BATCH_SIZE * 0.8 and duration < 5000,
            "duration": duration,
            "successful": len(ok),
        }

    @probe("Large dataset test")
    async def large_datasets(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []

        response, elapsed = await self.client.timed("GET", "/invoices", params={"limit": 1000})
        results.append({"test": "Large Invoice List", "success": response.is_success and elapsed < 2000, "duration": elapsed})

        response, elapsed = await self.client.timed("GET", "/clients/search", params={"q": "test"})
        results.append(
            {"test": "Client Search Performance", "success": response.is_success and elapsed < 1000, "duration": elapsed}
        )

        bulk = await self._bulk_client_creation()
        results.append({"test": "Bulk Client Creation", **bulk})

        for result in results:
            result["message"] = f"{result['duration']}ms {'(Pass)' if result['success'] else '(Slow)'}"

        passed = len([result for result in results if result["success"]])
        avg_duration = average([result["duration"] for result in results])
        return ProbeResult(
            success=passed >= len(results) * 0.7,
            message=f"Large dataset performance: {passed}/{len(results)} tests passed, avg {round(avg_duration)}ms",
            data={"results": results, "passed": passed, "avgDuration": avg_duration},
        )

    async def _round_trip_text(self, name: str, text: str, injection: bool) -> Dict[str, Any]:
        created = await self.client.post("/clients", json=mock_client("Unicode Client", name=text))
        if not created.is_success:
            if injection and is_rejection(created):
                return {"test": name, "success": True, "message": "Malicious input correctly rejected"}
            return {"test": name, "success": False, "message": f"Request failed: {created.status_code}"}

        record = json_or_none(created) or {}
        record_id = record.get("id") if isinstance(record, dict) else None
        try:
            if not record_id:
                return {"test": name, "success": False, "message": "No client ID returned"}
            detail = await self.client.get(f"/clients/{record_id}")
            stored = (json_or_none(detail) or {}).get("name") if detail.is_success else None
            if injection:
                inert = stored_inertly(text, stored, detail.headers.get("content-type", ""))
                return {
                    "test": name,
                    "success": inert,
                    "message": "Stored as inert text" if inert else "Injection payload altered or reflected",
                }
            preserved = stored == text
            return {
                "test": name,
                "success": preserved,
                "message": "Data preserved correctly" if preserved else "Data corrupted/modified",
            }
        finally:
            await self.client.discard("clients", record_id)

    @probe("Special characters test")
    async def special_characters(self) -> ProbeResult:
        results = [await self._round_trip_text(name, text, injection) for name, text, injection in SPECIAL_TEXTS]
        passed = len([result for result in results if result["success"]])
        unicode_passed = len(
            [
                result
                for result in results
                if result["success"] and any(tag in result["test"] for tag in UNICODE_TAGS)
            ]
        )
        security_passed = len(
            [result for result in results if result["success"] and any(tag in result["test"] for tag in ("SQL", "HTML"))]
        )
        return ProbeResult(
            success=passed >= len(results) * 0.8,
            message=(
                f"Special characters: {passed}/{len(results)} passed "
                f"(Unicode: {unicode_passed}, Security: {security_passed})"
            ),
            data={
                "results": results,
                "passed": passed,
                "unicodePassed": unicode_passed,
                "securityPassed": security_passed,
            },
        )

    @probe("Invoice number collision test")
    async def invoice_number_collision(self) -> ProbeResult:
        number = f"INV-{unique_suffix()}"
        first = await self.client.post(
            "/invoices",
            json=self._invoice_payload(
                clientId="test-client-1",
                invoiceNumber=number,
                total=100,
                items=[{"description": "First invoice", "quantity": 1, "unitPrice": 100}],
            ),
        )
        if not first.is_success:
            return ProbeResult(
                success=False, message=f"Invoice number collision: first invoice rejected ({first.status_code})"
            )
        try:
            second = await self.client.post(
                "/invoices",
                json=self._invoice_payload(
                    clientId="test-client-2",
                    invoiceNumber=number,
                    total=200,
                    items=[{"description": "Duplicate invoice", "quantity": 1, "unitPrice": 200}],
                ),
            )
            await self._discard_created("invoices", second)
        finally:
            await self._discard_created("invoices", first)

        rejected = is_rejection(second)
        error_message = text_or_empty(second).lower() if rejected else ""
        explained = any(word in error_message for word in ("duplicate", "exist", "unique"))
        return ProbeResult(
            success=rejected,
            message=(
                f"Invoice number collision: {'Correctly rejected' if rejected else 'FAILED - Duplicate allowed'}, "
                f"Error message {'appropriate' if explained else 'poor'}"
            ),
            data={
                "duplicateRejected": rejected,
                "hasProperError": explained,
                "status": second.status_code,
                "invoiceNumber": number,
            },
        )

    @probe("Client email duplication test")
    async def client_email_duplication(self) -> ProbeResult:
        email = f"duplicate-{unique_suffix()}@example.com"
        first = await self.client.post("/clients", json={"name": "First Client", "email": email})
        if not first.is_success:
            return ProbeResult(
                success=False, message=f"Client email duplication: first client rejected ({first.status_code})"
            )
        try:
            second = await self.client.post("/clients", json={"name": "Second Client", "email": email})
            await self._discard_created("clients", second)
        finally:
            await self._discard_created("clients", first)

        handled = is_rejection(second)
        error_message = text_or_empty(second).lower() if handled else ""
        explained = any(word in error_message for word in ("email", "duplicate", "exist"))
        return ProbeResult(
            success=handled,
            message=(
                f"Client email duplication: {'Properly handled' if handled else 'FAILED - Duplicate allowed'}, "
                f"Error message {'appropriate' if explained else 'needs improvement'}"
            ),
            data={"duplicateHandled": handled, "hasProperError": explained, "status": second.status_code, "email": email},
        )

    @probe("Invalid date ranges test")
    async def invalid_date_ranges(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for scenario in date_scenarios():
            response = await self.client.post(
                "/invoices",
                json=self._invoice_payload(issueDate=scenario.issue_date, dueDate=scenario.due_date, total=100),
            )
            await self._discard_created("invoices", response)
            if scenario.should_reject:
                handled = is_rejection(response)
                message = "Correctly rejected" if handled else "FAILED - Should have been rejected"
            else:
                handled = response.is_success
                message = "Correctly accepted" if handled else "FAILED - Should have been accepted"
            results.append({"scenario": scenario.name, "success": handled, "message": message})

        passed = len([result for result in results if result["success"]])
        return ProbeResult(
            success=passed >= len(results) * 0.75,
            message=f"Date validation: {passed}/{len(results)} scenarios handled correctly",
            data={"results": results, "passed": passed},
        )

    async def _amount_case(self, scenario: AmountScenario) -> Dict[str, Any]:
        response = await self.client.post(
            "/invoices",
            json=self._invoice_payload(
                invoiceNumber=f"INV-AMOUNT-{unique_suffix()}",
                total=scenario.amount,
                items=[
                    {"description": f"Amount test: {scenario.name}", "quantity": 1, "unitPrice": scenario.amount}
                ],
            ),
        )
        if not response.is_success:
            rejected = is_rejection(response)
            return {
                "scenario": scenario.name,
                "success": not scenario.should_work and rejected,
                "message": (
                    "FAILED - Should have been accepted"
                    if scenario.should_work
                    else ("Correctly rejected" if rejected else f"Server error: {response.status_code}")
                ),
            }

        body = json_or_none(response) or {}
        try:
            actual = body.get("total") if isinstance(body, dict) else None
            if not scenario.should_work:
                return {"scenario": scenario.name, "success": False, "message": "FAILED - Should have been rejected"}
            if not scenario.check_value:
                return {"scenario": scenario.name, "success": True, "message": "Correctly accepted", "actualAmount": actual}
            expected = round_money(scenario.amount)
            correct = money_close(actual, expected)
            return {
                "scenario": scenario.name,
                "success": correct,
                "message": (
                    f"Amount stored as {expected:.2f}" if correct else f"Rounding issue: expected {expected}, got {actual}"
                ),
                "actualAmount": actual,
            }
        finally:
            await self.client.discard("invoices", body.get("id") if isinstance(body, dict) else None)

    @probe("Large invoice amounts test")
    async def invoice_amounts(self) -> ProbeResult:
        results = [await self._amount_case(scenario) for scenario in AMOUNT_SCENARIOS]
        passed = len([result for result in results if result["success"]])
        return ProbeResult(
            success=passed >= len(results) * 0.8,
            message=f"Large invoice amounts: {passed}/{len(results)} scenarios handled correctly",
            data={"results": results, "passed": passed},
        )


def create_edge_case_suite(config: RunConfig, client: InvoiceApiClient) -> ProbeSuite:
    probes = EdgeCaseProbes(client)
    return ProbeSuite(
        name=SUITE_NAME,
        title="Edge Case Testing",
        setup=client.open,
        teardown=client.close,
        cases=[
            ProbeCase("Zero Credits Scenario", probes.zero_credits),
            ProbeCase("Invalid File Upload Security", probes.malicious_uploads),
            ProbeCase("Large Dataset Performance", probes.large_datasets),
            ProbeCase("Special Characters & Unicode", probes.special_characters),
            ProbeCase("Invoice Number Collision", probes.invoice_number_collision),
            ProbeCase("Client Email Duplication", probes.client_email_duplication),
            ProbeCase("Invalid Date Ranges", probes.invalid_date_ranges),
            ProbeCase("Large Invoice Amounts", probes.invoice_amounts),
        ],
    )

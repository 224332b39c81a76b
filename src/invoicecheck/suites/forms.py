"""Form-flow suite: multi-step invoice wizard invariants and client CRUD round trips."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from invoicecheck.client import InvoiceApiClient, json_or_none
from invoicecheck.harness.models import ProbeCase, ProbeResult, ProbeSuite, RunConfig
from invoicecheck.suites.common import (
    ScratchStore,
    compute_totals,
    iso_days_from_now,
    mock_client,
    mock_invoice,
    money_close,
    probe,
    unique_suffix,
)

logger = logging.getLogger(__name__)

SUITE_NAME = "form-testing"
WIZARD_STEPS = ("client", "details", "items", "preview")


def _parse_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def validate_details_step(data: Dict[str, Any]) -> Optional[str]:
    missing = [name for name in ("invoiceNumber", "issueDate", "dueDate") if not data.get(name)]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    issue_date = _parse_date(data["issueDate"])
    due_date = _parse_date(data["dueDate"])
    if issue_date is None or due_date is None:
        return "Issue and due dates must be ISO-8601 dates"
    if due_date < issue_date:
        return "Due date cannot be before issue date"
    return None


def validate_items_step(data: Dict[str, Any]) -> Optional[str]:
    items = data.get("items")
    if not isinstance(items, list) or not items:
        return "At least one invoice item is required"
    for index, item in enumerate(items, start=1):
        missing = [
            name
            for name in ("description", "quantity", "unitPrice")
            if item.get(name) is None or item.get(name) == ""
        ]
        if missing:
            return f"Item {index} missing required fields: {', '.join(missing)}"
        try:
            quantity = float(item["quantity"])
            unit_price = float(item["unitPrice"])
        except (TypeError, ValueError):
            return f"Item {index} has invalid quantity or price"
        if not (math.isfinite(quantity) and math.isfinite(unit_price)):
            return f"Item {index} has invalid quantity or price"
        if quantity <= 0 or unit_price < 0:
            return f"Item {index} has invalid quantity or price"
    return None


class FormFlowProbes:
    def __init__(self, client: InvoiceApiClient) -> None:
        self.client = client
        self.drafts = ScratchStore()

    @probe("Invoice flow validation")
    async def complete_invoice_flow(self) -> ProbeResult:
        client_record = await self.client.create("clients", mock_client("Form Flow Client"))
        if not client_record or not client_record.get("id"):
            return ProbeResult(success=False, message="Invoice flow failed at step client: could not create client")
        client_id = client_record["id"]
        invoice_id = None
        try:
            details = {
                "invoiceNumber": f"INV-FLOW-{unique_suffix()}",
                "issueDate": iso_days_from_now(0),
                "dueDate": iso_days_from_now(7),
            }
            items = [
                {"description": "Consulting", "quantity": 3, "unitPrice": 123.456},
                {"description": "Hosting", "quantity": 1, "unitPrice": 49.99},
            ]
            steps: List[Dict[str, Any]] = [
                {"step": "client", "data": {"clientId": client_id}},
                {"step": "details", "data": details},
                {"step": "items", "data": {"items": items}},
                {"step": "preview", "data": {"items": items, "vatRate": 18}},
            ]

            for step in steps:
                failure = await self._validate_step(step["step"], step["data"])
                if failure:
                    return ProbeResult(
                        success=False,
                        message=f"Invoice flow failed at step {step['step']}: {failure}",
                    )

            expected = compute_totals(items, 18)
            created = await self.client.create(
                "invoices", mock_invoice(client_id, items=items, vat_rate=18, **details)
            )
            if created is None:
                return ProbeResult(success=False, message="Invoice flow failed at submit: invoice rejected")
            invoice_id = created.get("id")

            mismatches = [
                f"{name}: expected {value}, got {created.get(name)}"
                for name, value in expected.items()
                if not money_close(created.get(name), value)
            ]
            if mismatches:
                return ProbeResult(
                    success=False,
                    message=f"Invoice flow totals mismatch: {'; '.join(mismatches)}",
                    data={"expected": expected, "actual": {name: created.get(name) for name in expected}},
                )
            return ProbeResult(
                success=True,
                message="Invoice flow validation completed successfully",
                data={"stepsCompleted": len(steps), "totals": expected},
            )
        finally:
            await self.client.discard("invoices", invoice_id)
            await self.client.discard("clients", client_id)

    async def _validate_step(self, step: str, data: Dict[str, Any]) -> Optional[str]:
        if step == "client":
            if not data.get("clientId"):
                return "Missing required fields: clientId"
            response = await self.client.get(f"/clients/{data['clientId']}")
            return None if response.is_success else "Selected client not found"
        if step == "details":
            return validate_details_step(data)
        if step == "items":
            return validate_items_step(data)
        if step == "preview":
            if not isinstance(data.get("items"), list):
                return "Items array required for preview validation"
            compute_totals(data["items"], data.get("vatRate", 0))
            return None
        return f"Unknown step: {step}"

    @probe("Client flow validation")
    async def client_crud(self) -> ProbeResult:
        payload = mock_client("CRUD Client")
        client_record = await self.client.create("clients", payload)
        if client_record is None:
            return ProbeResult(success=False, message="Client flow validation failed: client creation rejected")
        client_id = client_record.get("id")
        if not client_id:
            return ProbeResult(success=False, message="Client flow validation failed: no client ID returned")

        deleted = False
        try:
            read = await self.client.get(f"/clients/{client_id}")
            if not read.is_success:
                return ProbeResult(success=False, message=f"Client read failed: {read.status_code}")
            if (json_or_none(read) or {}).get("email") != payload["email"]:
                return ProbeResult(success=False, message="Client read returned a different record")

            new_name = f"{payload['name']} (Updated)"
            update = await self.client.patch(f"/clients/{client_id}", json={"name": new_name})
            if not update.is_success:
                return ProbeResult(success=False, message=f"Client update failed: {update.status_code}")
            reread = json_or_none(await self.client.get(f"/clients/{client_id}")) or {}
            if reread.get("name") != new_name:
                return ProbeResult(success=False, message="Client update was not persisted")

            first_ok, first_status = await self.client.delete_idempotent("clients", client_id)
            if not first_ok:
                return ProbeResult(success=False, message=f"Client deletion failed: {first_status}")
            deleted = True
            second_ok, second_status = await self.client.delete_idempotent("clients", client_id)
            if not second_ok:
                return ProbeResult(
                    success=False, message=f"Repeated client deletion not idempotent: {second_status}"
                )

            return ProbeResult(
                success=True,
                message="Client CRUD flow validation completed successfully",
                data={
                    "clientId": client_id,
                    "operations": ["create", "read", "update", "delete"],
                    "repeatDeleteStatus": second_status,
                },
            )
        finally:
            if not deleted:
                await self.client.discard("clients", client_id)

    async def _expect_validation_error(self, resource: str, invalid: Dict[str, Any]) -> ProbeResult:
        response = await self.client.post(f"/{resource}", json=invalid)
        if response.is_success:
            body = json_or_none(response)
            if isinstance(body, dict):
                await self.client.discard(resource, body.get("id"))
            return ProbeResult(success=False, message="Form validation failed - invalid data was accepted")

        body = json_or_none(response)
        errors = None
        if isinstance(body, dict):
            errors = body.get("errors") or body.get("error")
        valid = response.status_code == 400 and bool(errors)
        return ProbeResult(
            success=valid,
            message=(
                "Form validation working correctly - invalid data rejected"
                if valid
                else f"Form validation not working as expected (status {response.status_code})"
            ),
            data={"status": response.status_code, "errors": errors},
        )

    @probe("Invoice form validation")
    async def invalid_invoice(self) -> ProbeResult:
        return await self._expect_validation_error("invoices", {"description": "Invalid invoice"})

    @probe("Client form validation")
    async def invalid_client(self) -> ProbeResult:
        return await self._expect_validation_error("clients", {"phone": "+995555123456"})

    @probe("Form persistence")
    async def draft_persistence(self) -> ProbeResult:
        draft = {
            "clientName": "სატესტო კლიენტი",
            "items": [{"description": "Test Item", "quantity": 1, "unitPrice": 100}],
        }
        key = f"invoice_draft_{unique_suffix()}"
        self.drafts.set_item(key, draft)
        try:
            restored = self.drafts.get_item(key)
        finally:
            self.drafts.remove_item(key)
        persisted = restored == draft
        return ProbeResult(
            success=persisted,
            message="Form data persistence working correctly" if persisted else "Form data persistence failed",
            data={"original": draft, "retrieved": restored},
        )

    @probe("VAT calculation")
    async def vat_calculation(self) -> ProbeResult:
        items = [{"description": "VAT Check", "quantity": 1, "unitPrice": 1000}]
        expected = {"subtotal": 1000.0, "vatAmount": 180.0, "total": 1180.0}
        local = compute_totals(items, 18)
        if local != expected:
            return ProbeResult(success=False, message=f"Local VAT calculation wrong: {local}")

        client_record = await self.client.create("clients", mock_client("VAT Client"))
        client_id = (client_record or {}).get("id", "test-client-1")
        invoice = await self.client.create("invoices", mock_invoice(client_id, prefix="INV-VAT", items=items))
        try:
            if invoice is None:
                return ProbeResult(success=False, message="VAT calculation: invoice creation rejected")
            mismatches = [name for name, value in expected.items() if not money_close(invoice.get(name), value)]
            return ProbeResult(
                success=not mismatches,
                message=(
                    "VAT calculation correct: subtotal 1000.00, VAT 180.00, total 1180.00"
                    if not mismatches
                    else f"VAT calculation mismatch in {', '.join(mismatches)}"
                ),
                data={"expected": expected, "actual": {name: invoice.get(name) for name in expected}},
            )
        finally:
            await self.client.discard("invoices", (invoice or {}).get("id"))
            if client_record:
                await self.client.discard("clients", client_id)


def create_form_suite(config: RunConfig, client: InvoiceApiClient) -> ProbeSuite:
    probes = FormFlowProbes(client)
    return ProbeSuite(
        name=SUITE_NAME,
        title="Form Submission Testing",
        setup=client.open,
        teardown=client.close,
        cases=[
            ProbeCase("Complete Invoice Flow", probes.complete_invoice_flow),
            ProbeCase("Client CRUD Operations", probes.client_crud),
            ProbeCase("Form Validation - Invalid Invoice", probes.invalid_invoice),
            ProbeCase("Form Validation - Invalid Client", probes.invalid_client),
            ProbeCase("Form Data Persistence", probes.draft_persistence),
            ProbeCase("VAT Calculation", probes.vat_calculation),
        ],
    )

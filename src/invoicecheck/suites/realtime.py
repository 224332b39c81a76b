"""Realtime-sync suite: one write must become visible consistently across every view that shows it."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from invoicecheck.client import InvoiceApiClient, json_or_none
from invoicecheck.harness.models import ProbeCase, ProbeResult, ProbeSuite, RunConfig
from invoicecheck.suites.common import (
    ScratchStore,
    extract_records,
    find_record,
    mock_client,
    mock_invoice,
    poll_until,
    probe,
    unique_suffix,
)

logger = logging.getLogger(__name__)

SUITE_NAME = "realtime-testing"

OPTIMISTIC_BUDGET_MS = 50
USER_STAGGER_S = 0.1


def _credits_from(view: str, body: Any) -> Optional[float]:
    if not isinstance(body, dict):
        return None
    if view == "profile" and isinstance(body.get("user"), dict):
        body = body["user"]
    value = body.get("credits")
    return float(value) if isinstance(value, (int, float)) else None


class RealtimeProbes:
    def __init__(self, config: RunConfig, client: InvoiceApiClient) -> None:
        self.config = config
        self.client = client
        self.scratch = ScratchStore()

    async def _poll(self, check) -> bool:
        return await poll_until(check, self.config.sync_poll_window_ms, self.config.sync_poll_interval_ms)

    async def _create_client_and_invoice(self) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        client_record = await self.client.create("clients", mock_client("Sync Client"))
        if not client_record or not client_record.get("id"):
            return None, None
        invoice = await self.client.create("invoices", mock_invoice(client_record["id"], prefix="INV-SYNC"))
        return client_record, invoice

    @probe("Optimistic updates test")
    async def optimistic_updates(self) -> ProbeResult:
        invoice = await self.client.create("invoices", mock_invoice(prefix="INV-OPT", status="draft"))
        if not invoice or not invoice.get("id"):
            return ProbeResult(success=False, message="Optimistic updates: could not create a test invoice")
        try:
            start = time.perf_counter()
            optimistic = dict(invoice, status="sent")
            optimistic_ms = int(round((time.perf_counter() - start) * 1000))

            response = await self.client.patch(f"/invoices/{invoice['id']}/status", json={"status": "sent"})
            server_ms = int(round((time.perf_counter() - start) * 1000))
            server_data = json_or_none(response) if response.is_success else None
            confirmed = response.is_success and (
                not isinstance(server_data, dict) or server_data.get("status", "sent") == "sent"
            )

            fast = optimistic_ms < OPTIMISTIC_BUDGET_MS
            return ProbeResult(
                success=fast and confirmed,
                message=f"Optimistic updates: UI update {optimistic_ms}ms, Server confirmation {server_ms}ms",
                data={
                    "optimisticTime": optimistic_ms,
                    "serverTime": server_ms,
                    "optimisticData": optimistic,
                    "serverData": server_data,
                    "serverError": not response.is_success,
                },
            )
        finally:
            await self.client.discard("invoices", invoice["id"])

    async def _list_ids(self, path: str, key: str) -> List[Any]:
        response = await self.client.get(path)
        if not response.is_success:
            return []
        return [record.get("id") for record in extract_records(json_or_none(response), key)]

    @probe("Cache invalidation test")
    async def cache_invalidation(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        owned: List[Tuple[str, Any]] = []
        try:
            for title, resource, payload in (
                ("Invoice List Cache", "invoices", mock_invoice(prefix="INV-CACHE")),
                ("Client List Cache", "clients", mock_client("Cache Client")),
            ):
                key = f"{resource}-{unique_suffix()}"
                self.scratch.set_item(key, await self._list_ids(f"/{resource}", resource))
                created = await self.client.create(resource, payload)
                if not created or not created.get("id"):
                    self.scratch.remove_item(key)
                    results.append({"test": title, "success": False, "message": f"{title}: create rejected"})
                    continue
                owned.append((resource, created["id"]))
                cached = self.scratch.get_item(key)
                self.scratch.remove_item(key)

                async def visible(resource: str = resource, record_id: Any = created["id"]) -> bool:
                    return record_id in await self._list_ids(f"/{resource}", resource)

                fresh = created["id"] not in cached and await self._poll(visible)
                results.append(
                    {
                        "test": title,
                        "success": fresh,
                        "message": f"{title} invalidated" if fresh else f"{title} served stale data",
                    }
                )

            client_id = next((record_id for resource, record_id in owned if resource == "clients"), None)
            if client_id is None:
                results.append({"test": "Client Delete Cache", "success": False, "message": "No client to delete"})
            else:
                deleted, status = await self.client.delete_idempotent("clients", client_id)
                owned.remove(("clients", client_id))

                async def removed() -> bool:
                    return client_id not in await self._list_ids("/clients", "clients")

                fresh = deleted and await self._poll(removed)
                if not deleted:
                    message = f"Client Delete Cache: delete rejected ({status})"
                elif fresh:
                    message = "Client Delete Cache invalidated"
                else:
                    message = "Client Delete Cache served stale data"
                results.append({"test": "Client Delete Cache", "success": fresh, "message": message})

            invoice_id = next((record_id for resource, record_id in owned if resource == "invoices"), None)
            if invoice_id is None:
                results.append({"test": "Invoice Detail Cache", "success": False, "message": "No invoice to update"})
            else:
                marker = f"cache-{unique_suffix()}"
                await self.client.patch(f"/invoices/{invoice_id}", json={"notes": marker})

                async def detail_fresh() -> bool:
                    response = await self.client.get(f"/invoices/{invoice_id}")
                    return response.is_success and (json_or_none(response) or {}).get("notes") == marker

                fresh = await self._poll(detail_fresh)
                results.append(
                    {
                        "test": "Invoice Detail Cache",
                        "success": fresh,
                        "message": "Invoice Detail Cache invalidated" if fresh else "Invoice Detail Cache served stale data",
                    }
                )
        finally:
            for resource, record_id in owned:
                await self.client.discard(resource, record_id)

        passed = len([result for result in results if result["success"]])
        return ProbeResult(
            success=passed == len(results),
            message=f"Cache invalidation: {passed}/{len(results)} tests passed",
            data={"results": results, "successRate": passed / len(results) * 100 if results else 0.0},
        )

    async def _user_action(self, index: int, user: str, method: str, path: str, body: Any) -> Dict[str, Any]:
        await asyncio.sleep(index * USER_STAGGER_S)
        try:
            response = await self.client.request(method, path, json=body, headers={"X-User-ID": user})
        except httpx.HTTPError as exc:
            return {"user": user, "success": False, "conflict": False, "message": f"{user} failed: {exc}"}
        return {
            "user": user,
            "success": response.is_success,
            "conflict": response.status_code == 409,
            "status": response.status_code,
            "message": f"{user} {method} {path}: {'success' if response.is_success else response.status_code}",
            "body": json_or_none(response) if method == "POST" and response.is_success else None,
        }

    @probe("Concurrent users test")
    async def concurrent_users(self) -> ProbeResult:
        shared = await self.client.create("invoices", mock_invoice(prefix="INV-SHARED"))
        deletable = await self.client.create("invoices", mock_invoice(prefix="INV-DEL"))
        owned = [record["id"] for record in (shared, deletable) if record and record.get("id")]
        actions = [
            ("user1", "POST", "/invoices", mock_invoice(prefix="INV-USER1")),
            ("user2", "PATCH", f"/invoices/{(shared or {}).get('id', 'shared-invoice')}", {"status": "sent"}),
            ("user3", "DELETE", f"/invoices/{(deletable or {}).get('id', 'deletable-invoice')}", None),
        ]
        try:
            results = await asyncio.gather(
                *(self._user_action(index, *action) for index, action in enumerate(actions))
            )
            for result in results:
                body = result.pop("body", None)
                if isinstance(body, dict) and body.get("id"):
                    owned.append(body["id"])
        finally:
            for record_id in owned:
                await self.client.discard("invoices", record_id)

        successful = len([result for result in results if result["success"]])
        conflicts = len([result for result in results if result["conflict"]])
        # Conflicting writes are expected under contention; one winner is enough.
        return ProbeResult(
            success=successful > 0,
            message=f"Concurrent users: {successful}/{len(actions)} successful, {conflicts} conflicts detected",
            data={"totalActions": len(actions), "successful": successful, "conflicts": conflicts, "results": results},
        )

    @probe("Offline sync test")
    async def offline_sync(self) -> ProbeResult:
        client_record = await self.client.create("clients", mock_client("Offline Client"))
        owned_invoices: List[Any] = []
        queued: List[str] = []
        try:
            actions: List[Dict[str, Any]] = [
                {"action": "create_invoice", "data": mock_invoice(prefix="INV-OFFLINE")},
            ]
            if client_record and client_record.get("id"):
                actions.append(
                    {"action": "update_client", "data": {"id": client_record["id"], "name": "Updated Offline"}}
                )
            for action in actions:
                key = f"offline_action_{unique_suffix()}"
                self.scratch.set_item(key, dict(action, synced=False))
                queued.append(key)

            synced = 0
            errors: List[Dict[str, Any]] = []
            for key in list(queued):
                action = self.scratch.get_item(key)
                if action["action"] == "create_invoice":
                    response = await self.client.post("/invoices", json=action["data"])
                    body = json_or_none(response) if response.is_success else None
                    if isinstance(body, dict) and body.get("id"):
                        owned_invoices.append(body["id"])
                else:
                    data = dict(action["data"])
                    response = await self.client.patch(f"/clients/{data.pop('id')}", json=data)
                if response.is_success:
                    synced += 1
                    self.scratch.remove_item(key)
                    queued.remove(key)
                else:
                    errors.append({"action": action["action"], "error": response.status_code})
        finally:
            for key in queued:
                self.scratch.remove_item(key)
            for invoice_id in owned_invoices:
                await self.client.discard("invoices", invoice_id)
            await self.client.discard("clients", (client_record or {}).get("id"))

        sync_ok = not errors
        return ProbeResult(
            success=len(actions) > 0 and sync_ok,
            message=f"Offline sync: {len(actions)} actions stored offline, sync {'successful' if sync_ok else 'failed'}",
            data={"storedActions": len(actions), "syncedCount": synced, "errors": errors},
        )

    @probe("Invoice status sync test")
    async def invoice_status_sync(self) -> ProbeResult:
        client_record, invoice = await self._create_client_and_invoice()
        if not invoice or not invoice.get("id"):
            await self.client.discard("clients", (client_record or {}).get("id"))
            return ProbeResult(success=False, message="Invoice status sync: could not create test data")
        invoice_id = invoice["id"]
        client_id = client_record["id"]
        new_status = "sent"
        views: Dict[str, Any] = {}
        try:
            update = await self.client.patch(f"/invoices/{invoice_id}/status", json={"status": new_status})
            if not update.is_success:
                return ProbeResult(
                    success=False, message=f"Invoice status sync: status update failed ({update.status_code})"
                )

            async def synchronized() -> bool:
                detail, listing, by_client = await asyncio.gather(
                    self.client.get(f"/invoices/{invoice_id}"),
                    self.client.get("/invoices"),
                    self.client.get(f"/clients/{client_id}/invoices"),
                )
                views["detail"] = (json_or_none(detail) or {}).get("status") if detail.is_success else None
                views["list"] = (find_record(json_or_none(listing), "invoices", invoice_id) or {}).get("status")
                views["client"] = (find_record(json_or_none(by_client), "invoices", invoice_id) or {}).get("status")
                return all(value == new_status for value in views.values())

            synced = await self._poll(synchronized)
        finally:
            await self.client.discard("invoices", invoice_id)
            await self.client.discard("clients", client_id)

        return ProbeResult(
            success=synced,
            message=(
                "Invoice status synchronized across all views"
                if synced
                else f"Invoice status out of sync: {views}"
            ),
            data={"invoiceId": invoice_id, "expectedStatus": new_status, "views": views},
        )

    @probe("Client update sync test")
    async def client_update_sync(self) -> ProbeResult:
        client_record = await self.client.create("clients", mock_client("Sync Client"))
        if not client_record or not client_record.get("id"):
            return ProbeResult(success=False, message="Client update sync: could not create a test client")
        client_id = client_record["id"]
        new_name = f"Synced Client {unique_suffix()}"
        views: Dict[str, Any] = {}
        try:
            update = await self.client.patch(f"/clients/{client_id}", json={"name": new_name})
            if not update.is_success:
                return ProbeResult(success=False, message=f"Client update sync: update failed ({update.status_code})")

            async def synchronized() -> bool:
                detail, listing, search = await asyncio.gather(
                    self.client.get(f"/clients/{client_id}"),
                    self.client.get("/clients"),
                    self.client.get("/clients/search", params={"q": new_name}),
                )
                views["detail"] = (json_or_none(detail) or {}).get("name") if detail.is_success else None
                views["list"] = (find_record(json_or_none(listing), "clients", client_id) or {}).get("name")
                views["search"] = (find_record(json_or_none(search), "clients", client_id) or {}).get("name")
                return all(value == new_name for value in views.values())

            synced = await self._poll(synchronized)
        finally:
            await self.client.discard("clients", client_id)

        return ProbeResult(
            success=synced,
            message="Client update synchronized across all views" if synced else f"Client update out of sync: {views}",
            data={"clientId": client_id, "expectedName": new_name, "views": views},
        )

    async def _credit_views(self) -> Dict[str, Optional[float]]:
        sources = (("credits", "/user/credits"), ("profile", "/user/profile"), ("dashboard", "/dashboard"))
        responses = await asyncio.gather(*(self.client.get(path) for _, path in sources))
        return {
            view: _credits_from(view, json_or_none(response)) if response.is_success else None
            for (view, _), response in zip(sources, responses)
        }

    @probe("Credit balance sync test")
    async def credit_balance_sync(self) -> ProbeResult:
        initial = (await self._credit_views())["credits"]
        if initial is None:
            return ProbeResult(success=False, message="Credit balance sync: could not read the initial balance")

        invoice = await self.client.create("invoices", mock_invoice(prefix="INV-CREDIT"))
        views: Dict[str, Optional[float]] = {}
        try:
            if invoice is None:
                return ProbeResult(success=False, message="Credit balance sync: invoice creation rejected")

            async def decreased() -> bool:
                views.update(await self._credit_views())
                return any(value is not None and value < initial for value in views.values())

            synced = await self._poll(decreased)
        finally:
            await self.client.discard("invoices", (invoice or {}).get("id"))

        reflecting = [view for view, value in views.items() if value is not None and value < initial]
        return ProbeResult(
            success=synced,
            message=(
                f"Credit balance synchronized ({', '.join(reflecting)} reflect the deduction)"
                if synced
                else "Credit balance not updated in any view"
            ),
            data={"initialBalance": initial, "views": views},
        )


def create_realtime_suite(config: RunConfig, client: InvoiceApiClient) -> ProbeSuite:
    probes = RealtimeProbes(config, client)
    return ProbeSuite(
        name=SUITE_NAME,
        title="Real-time Updates Testing",
        setup=client.open,
        teardown=client.close,
        cases=[
            ProbeCase("Optimistic Updates", probes.optimistic_updates),
            ProbeCase("Cache Invalidation", probes.cache_invalidation),
            ProbeCase("Concurrent Users", probes.concurrent_users),
            ProbeCase("Offline Sync", probes.offline_sync),
            ProbeCase("Invoice Status Synchronization", probes.invoice_status_sync),
            ProbeCase("Client Update Synchronization", probes.client_update_sync),
            ProbeCase("Credit Balance Synchronization", probes.credit_balance_sync),
        ],
    )

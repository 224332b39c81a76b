"""Tests for the HTTP client wrapper."""

import httpx
import pytest

from invoicecheck.client import InvoiceApiClient, json_or_none, text_or_empty


class TestPaths:
    """URL resolution under the API prefix."""

    def test_api_paths_are_prefixed(self, config):
        client = InvoiceApiClient(config)

        assert client.path("/invoices") == "/api/invoices"
        assert client.path("/login", api=False) == "/login"
        assert client.url("/clients") == "https://invoices.test/api/clients"

    def test_empty_prefix(self, config):
        client = InvoiceApiClient(config.replace(api_base_path=""))

        assert client.path("/invoices") == "/invoices"


class TestRequests:
    """Requests against the in-memory app."""

    async def test_bearer_token_sent_by_default(self, api_client):
        response = await api_client.get("/user/profile")

        assert response.status_code == 200

    async def test_auth_can_be_suppressed(self, api_client):
        response = await api_client.get("/user/profile", auth=False)

        assert response.status_code == 401

    async def test_create_returns_record(self, api_client):
        record = await api_client.create("clients", {"name": "Acme", "email": "billing@acme.ge"})

        assert record["id"]
        assert record["name"] == "Acme"

    async def test_create_returns_none_when_rejected(self, api_client):
        assert await api_client.create("clients", {"name": "No Email"}) is None

    async def test_delete_idempotent(self, api_client):
        record = await api_client.create("clients", {"name": "Gone", "email": "gone@acme.ge"})

        assert await api_client.delete_idempotent("clients", record["id"]) == (True, 200)
        assert await api_client.delete_idempotent("clients", record["id"]) == (True, 404)

    async def test_delete_server_error_is_not_ok(self, api_client, fake_app):
        fake_app.fail[("DELETE", "/api/clients/cli-9")] = 500

        assert await api_client.delete_idempotent("clients", "cli-9") == (False, 500)

    async def test_discard_swallows_transport_errors(self, api_client, fake_app):
        fake_app.offline = True

        await api_client.discard("clients", "cli-1")
        await api_client.discard("clients", None)

        assert fake_app.requests == [("DELETE", "/api/clients/cli-1")]

    async def test_upload_sends_multipart(self, api_client):
        response = await api_client.upload("/upload/avatar", "logo.png", b"\x89PNG data", "image/png")

        assert response.status_code == 200
        assert response.json()["size"] == len(b"\x89PNG data")

    async def test_timed_reports_milliseconds(self, api_client):
        response, elapsed = await api_client.timed("GET", "/invoices")

        assert response.is_success
        assert elapsed >= 0

    async def test_close_allows_reopen(self, api_client):
        await api_client.close()

        response = await api_client.get("/clients")

        assert response.is_success


class TestBodies:
    """Lenient body decoding."""

    def test_json_or_none(self):
        assert json_or_none(httpx.Response(200, json={"ok": True})) == {"ok": True}
        assert json_or_none(httpx.Response(200, text="<html>")) is None

    def test_text_or_empty(self):
        assert text_or_empty(httpx.Response(402, text="Insufficient credits")) == "Insufficient credits"


@pytest.mark.parametrize("status", [200, 404])
async def test_delete_statuses_accepted(api_client, fake_app, status):
    fake_app.fail[("DELETE", "/api/invoices/inv-1")] = status

    ok, returned = await api_client.delete_idempotent("invoices", "inv-1")

    assert ok
    assert returned == status

"""HTTP tests for the invoice lifecycle and usage endpoints."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from httpx import AsyncClient

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


async def _create_invoice(client: AsyncClient, invoice_id: str = "inv-1", **headers: Any) -> dict[str, Any]:
    resp = await client.post(
        "/api/v1/sync/batch",
        json={
            "mutations": [
                {
                    "id": "m1",
                    "type": "CREATE_INVOICE",
                    "data": {"id": invoice_id, "lineItems": [{"name": "Widget", "quantity": 1, "rate": 100}]},
                }
            ]
        },
        headers=headers or None,
    )
    assert resp.status_code == 200
    result = resp.json()["data"][0]
    assert result["status"] == "success", result
    return result["data"]


class TestInvoiceEndpoints:
    @pytest.mark.asyncio
    async def test_get_invoice(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)

        resp = await client.get("/api/v1/invoices/inv-1")

        assert resp.status_code == 200
        assert resp.json()["invoiceNumber"] == "INV-0001"
        assert resp.json()["status"] == "DRAFT"

    @pytest.mark.asyncio
    async def test_missing_invoice_error_body(self, client: AsyncClient, tenant: str) -> None:
        resp = await client.get("/api/v1/invoices/ghost")

        assert resp.status_code == 404
        assert resp.json() == {
            "error": {
                "code": "INVOICE_NOT_FOUND",
                "message": "Invoice not found",
                "details": {"invoiceId": "ghost"},
            }
        }

    @pytest.mark.asyncio
    async def test_issue_then_pay(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)

        issued = await client.post("/api/v1/invoices/inv-1/issue")
        paid = await client.patch("/api/v1/invoices/inv-1/status", json={"status": "PAID"})

        assert issued.status_code == 200
        assert issued.json()["status"] == "ISSUED"
        assert paid.status_code == 200
        assert paid.json()["status"] == "PAID"

    @pytest.mark.asyncio
    async def test_issue_twice_is_400(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)
        await client.post("/api/v1/invoices/inv-1/issue")

        resp = await client.post("/api/v1/invoices/inv-1/issue")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

    @pytest.mark.asyncio
    async def test_quota_exceeded_is_402_with_usage(
        self, client: AsyncClient, make_tenant: Callable[..., Awaitable[None]]
    ) -> None:
        await make_tenant(TENANT, monthly_invoice_limit=1)
        await _create_invoice(client, "inv-1")
        await _create_invoice(client, "inv-2")
        await client.post("/api/v1/invoices/inv-1/issue")

        resp = await client.post("/api/v1/invoices/inv-2/issue")

        assert resp.status_code == 402
        error = resp.json()["error"]
        assert error["code"] == "PLAN_LIMIT_REACHED"
        assert error["details"]["usage"]["limit"] == 1
        assert error["details"]["usage"]["used"] == 1

    @pytest.mark.asyncio
    async def test_empty_status_is_422(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)

        resp = await client.patch("/api/v1/invoices/inv-1/status", json={"status": ""})

        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_delete_draft(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)

        resp = await client.delete("/api/v1/invoices/inv-1")
        follow_up = await client.get("/api/v1/invoices/inv-1")

        assert resp.json() == {"id": "inv-1", "deleted": True}
        assert follow_up.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_issued_is_403(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)
        await client.post("/api/v1/invoices/inv-1/issue")

        resp = await client.delete("/api/v1/invoices/inv-1")

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "INVOICE_NOT_EDITABLE"

    @pytest.mark.asyncio
    async def test_other_tenant_invoice_is_403(
        self,
        client: AsyncClient,
        make_tenant: Callable[..., Awaitable[None]],
        auth_headers: Callable[..., dict[str, str]],
    ) -> None:
        await make_tenant(TENANT)
        await make_tenant(OTHER_TENANT)
        await _create_invoice(client, "inv-b", **auth_headers(OTHER_TENANT))

        resp = await client.get("/api/v1/invoices/inv-b")

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"


class TestUsageEndpoint:
    @pytest.mark.asyncio
    async def test_usage_snapshot(self, client: AsyncClient, tenant: str) -> None:
        await _create_invoice(client)
        await client.post("/api/v1/invoices/inv-1/issue")

        resp = await client.get("/api/v1/usage")

        assert resp.status_code == 200
        body = resp.json()
        assert body["limit"] == 10
        assert body["used"] == 1
        assert body["remaining"] == 9
        assert body["planTier"] == "free"
        assert body["canIssue"] is True
        assert len(body["monthKey"]) == 7

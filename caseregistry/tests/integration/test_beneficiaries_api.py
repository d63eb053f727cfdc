from __future__ import annotations

from datetime import date
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from caseregistry.apps.api.main import create_app
from caseregistry.services import audit
from caseregistry.tests.utils.auth import (
    FIELD_OPERATOR_HEADERS,
    PROGRAM_MANAGER_HEADERS,
    SUB_PROJECT_MANAGER_HEADERS,
    SUPER_ADMIN_HEADERS,
    SYSADMIN_HEADERS,
    count_audit_logs,
    fetch_audit_logs,
)


BENEFICIARY = {
    "first_name": "Ilir",
    "last_name": "Berisha",
    "dob": "1990-05-02",
    "national_id": "A123",
    "phone": "+383 44 123 456",
    "gender": "Male",
    "household_members": 4,
}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _create(client: AsyncClient, body: dict[str, Any] | None = None) -> dict[str, Any]:
    response = await client.post("/v1/beneficiaries", json=body or BENEFICIARY, headers=PROGRAM_MANAGER_HEADERS)
    assert response.status_code == 201
    return response.json()["data"]


@pytest.mark.asyncio
async def test_create_returns_safe_fields_only() -> None:
    async with _client() as client:
        created = await _create(client)

    assert set(created) == {"id", "pseudonym", "status", "created_at", "updated_at"}
    assert created["status"] == "active"
    assert created["pseudonym"].startswith("B-")
    assert await count_audit_logs(audit.BENEFICIARY_CREATE) == 1
    [row] = await fetch_audit_logs(audit.BENEFICIARY_CREATE)
    assert row.details["beneficiary_id"] == created["id"]
    assert "Ilir" not in str(row.details)


@pytest.mark.asyncio
async def test_non_privileged_read_has_no_pii_and_no_audit() -> None:
    async with _client() as client:
        created = await _create(client)
        response = await client.get(f"/v1/beneficiaries/{created['id']}", headers=PROGRAM_MANAGER_HEADERS)

    assert response.status_code == 200
    assert response.headers["X-PII-Access"] == "encrypted"
    assert "no-store" not in response.headers.get("Cache-Control", "")
    body = response.json()["data"]
    assert "pii" not in body
    assert body["pii_enc"]["first_name"]["alg"] == "aes-256-gcm"
    assert "Ilir" not in response.text
    assert await count_audit_logs(audit.PII_READ) == 0


@pytest.mark.asyncio
async def test_privileged_read_decrypts_and_writes_one_audit_row() -> None:
    async with _client() as client:
        created = await _create(client)
        response = await client.get(f"/v1/beneficiaries/{created['id']}", headers=SUPER_ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.headers["X-PII-Access"] == "decrypt"
    assert response.headers["Cache-Control"] == "no-store, no-cache"
    assert response.headers["Pragma"] == "no-cache"
    pii = response.json()["data"]["pii"]
    assert pii["first_name"] == "Ilir"
    assert pii["dob"] == "1990-05-02"
    assert pii["phone"] == "38344123456"
    assert pii["gender"] == "M"
    assert pii["household_members"] == "4"

    [row] = await fetch_audit_logs(audit.PII_READ)
    assert row.user_id == SUPER_ADMIN_HEADERS["X-User-Id"]
    assert row.details["beneficiary_id"] == created["id"]
    assert "first_name" in row.details["fields"]
    assert "Ilir" not in str(row.details)


@pytest.mark.asyncio
async def test_list_writes_one_audit_row_per_privileged_page() -> None:
    async with _client() as client:
        for index in range(3):
            await _create(client, {**BENEFICIARY, "national_id": f"N-{index}"})
        hidden = await client.get("/v1/beneficiaries", headers=SUB_PROJECT_MANAGER_HEADERS)
        shown = await client.get("/v1/beneficiaries?limit=2", headers=SYSADMIN_HEADERS)

    assert hidden.status_code == 200
    assert hidden.headers["X-PII-Access"] == "encrypted"
    assert all("pii" not in item for item in hidden.json()["data"]["items"])

    page = shown.json()["data"]
    assert shown.headers["X-PII-Access"] == "decrypt"
    assert len(page["items"]) == 2
    assert page["total_items"] == 3
    assert page["total_pages"] == 2
    assert all(item["pii"]["first_name"] == "Ilir" for item in page["items"])
    assert await count_audit_logs(audit.PII_LIST_READ) == 1
    assert await count_audit_logs(audit.PII_READ) == 0


@pytest.mark.asyncio
async def test_list_clamps_page_size_and_filters_status() -> None:
    async with _client() as client:
        first = await _create(client)
        await _create(client, {**BENEFICIARY, "national_id": "B999"})
        await client.delete(f"/v1/beneficiaries/{first['id']}", headers=PROGRAM_MANAGER_HEADERS)
        response = await client.get(
            "/v1/beneficiaries?status=inactive&limit=5000", headers=PROGRAM_MANAGER_HEADERS
        )

    page = response.json()["data"]
    assert page["limit"] == 100
    assert [item["id"] for item in page["items"]] == [first["id"]]


@pytest.mark.asyncio
async def test_pii_endpoint_is_restricted_to_privileged_roles() -> None:
    async with _client() as client:
        created = await _create(client)
        denied = await client.get(f"/v1/beneficiaries/{created['id']}/pii", headers=PROGRAM_MANAGER_HEADERS)
        allowed = await client.get(f"/v1/beneficiaries/{created['id']}/pii", headers=SYSADMIN_HEADERS)

    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert await count_audit_logs(audit.RBAC_FORBIDDEN) == 1

    assert allowed.status_code == 200
    assert allowed.headers["Cache-Control"] == "no-store, no-cache"
    assert allowed.json()["data"] == {
        "id": created["id"],
        "pii": {
            "first_name": "Ilir",
            "last_name": "Berisha",
            "dob": "1990-05-02",
            "national_id": "A123",
            "phone": "38344123456",
            "gender": "M",
            "household_members": "4",
        },
    }
    assert await count_audit_logs(audit.PII_READ) == 1


@pytest.mark.asyncio
async def test_demographics_returns_counts_and_one_audit_row() -> None:
    young_dob = date(date.today().year - 10, 1, 1).isoformat()
    async with _client() as client:
        await _create(client, {"dob": young_dob, "gender": "F"})
        await _create(client, {"dob": "1950-01-01", "gender": "m"})
        await _create(client, {"first_name": "Arta"})
        denied = await client.get("/v1/beneficiaries/demographics", headers=PROGRAM_MANAGER_HEADERS)
        response = await client.get("/v1/beneficiaries/demographics", headers=SUPER_ADMIN_HEADERS)

    assert denied.status_code == 403
    assert response.status_code == 200
    assert response.headers["X-PII-Access"] == "decrypt"
    summary = response.json()["data"]
    assert summary["total"] == 3
    assert {bucket["name"]: bucket["value"] for bucket in summary["age"]} == {
        "0-20": 1,
        "21-35": 0,
        "36-55": 0,
        "55+": 1,
    }
    assert {bucket["name"]: bucket["count"] for bucket in summary["gender"]} == {
        "Male": 1,
        "Female": 1,
        "Unknown": 1,
    }
    assert await count_audit_logs(audit.PII_AGGREGATE) == 1


@pytest.mark.asyncio
async def test_update_overwrites_supplied_fields_only() -> None:
    async with _client() as client:
        created = await _create(client)
        updated = await client.put(
            f"/v1/beneficiaries/{created['id']}",
            json={"phone": "044 000 111", "email": None},
            headers=PROGRAM_MANAGER_HEADERS,
        )
        missing = await client.put(
            "/v1/beneficiaries/does-not-exist", json={"phone": "1"}, headers=PROGRAM_MANAGER_HEADERS
        )
        read = await client.get(f"/v1/beneficiaries/{created['id']}/pii", headers=SUPER_ADMIN_HEADERS)

    assert updated.status_code == 200
    assert missing.status_code == 404
    pii = read.json()["data"]["pii"]
    assert pii["phone"] == "044000111"
    assert pii["first_name"] == "Ilir"
    assert "email" not in pii
    assert await count_audit_logs(audit.BENEFICIARY_UPDATE) == 1


@pytest.mark.asyncio
async def test_status_change_and_soft_delete() -> None:
    async with _client() as client:
        created = await _create(client)
        patched = await client.patch(
            f"/v1/beneficiaries/{created['id']}/status",
            json={"status": "inactive"},
            headers=PROGRAM_MANAGER_HEADERS,
        )
        invalid = await client.patch(
            f"/v1/beneficiaries/{created['id']}/status",
            json={"status": "archived"},
            headers=PROGRAM_MANAGER_HEADERS,
        )
        deleted = await client.delete(f"/v1/beneficiaries/{created['id']}", headers=SYSADMIN_HEADERS)
        still_there = await client.get(f"/v1/beneficiaries/{created['id']}", headers=PROGRAM_MANAGER_HEADERS)

    assert patched.json()["data"]["status"] == "inactive"
    assert invalid.status_code == 422
    assert deleted.status_code == 200
    assert still_there.status_code == 200
    assert still_there.json()["data"]["status"] == "inactive"
    assert await count_audit_logs(audit.BENEFICIARY_STATUS_UPDATE) == 1
    assert await count_audit_logs(audit.BENEFICIARY_DELETE) == 1


@pytest.mark.asyncio
async def test_field_operator_cannot_read_or_write_beneficiaries() -> None:
    async with _client() as client:
        listed = await client.get("/v1/beneficiaries", headers=FIELD_OPERATOR_HEADERS)
        created = await client.post("/v1/beneficiaries", json=BENEFICIARY, headers=FIELD_OPERATOR_HEADERS)
        spm_create = await client.post(
            "/v1/beneficiaries", json=BENEFICIARY, headers=SUB_PROJECT_MANAGER_HEADERS
        )

    assert listed.status_code == 403
    assert created.status_code == 403
    assert spm_create.status_code == 403
    rows = await fetch_audit_logs(audit.RBAC_FORBIDDEN)
    assert len(rows) == 3
    assert rows[0].details["path"] == "/v1/beneficiaries"


@pytest.mark.asyncio
async def test_entity_links_round_trip() -> None:
    async with _client() as client:
        created = await _create(client)
        base = f"/v1/beneficiaries/{created['id']}/entities"
        link = {"entity_id": "p-1", "entity_type": "project"}
        first = await client.post(base, json=link, headers=SUB_PROJECT_MANAGER_HEADERS)
        again = await client.post(base, json=link, headers=SUB_PROJECT_MANAGER_HEADERS)
        listed = await client.get(base, headers=PROGRAM_MANAGER_HEADERS)
        by_entity = await client.get(
            "/v1/beneficiaries/by-entity?entity_id=p-1&entity_type=project", headers=SUPER_ADMIN_HEADERS
        )
        removed = await client.delete(
            f"{base}?entity_id=p-1&entity_type=project", headers=PROGRAM_MANAGER_HEADERS
        )
        removed_again = await client.delete(
            f"{base}?entity_id=p-1&entity_type=project", headers=PROGRAM_MANAGER_HEADERS
        )
        bad_type = await client.post(
            base, json={"entity_id": "a-1", "entity_type": "activity"}, headers=PROGRAM_MANAGER_HEADERS
        )

    assert first.status_code == 200
    assert again.status_code == 200
    items = listed.json()["data"]["items"]
    assert [(item["entity_id"], item["entity_type"]) for item in items] == [("p-1", "project")]
    page = by_entity.json()["data"]
    assert [item["id"] for item in page["items"]] == [created["id"]]
    assert page["items"][0]["pii"]["national_id"] == "A123"
    assert removed.status_code == 200
    assert removed_again.status_code == 404
    assert bad_type.status_code == 422
    assert await count_audit_logs(audit.BENEFICIARY_ASSIGN) == 2
    assert await count_audit_logs(audit.BENEFICIARY_UNASSIGN) == 1


@pytest.mark.asyncio
async def test_unknown_beneficiary_is_404() -> None:
    async with _client() as client:
        response = await client.get("/v1/beneficiaries/nope", headers=SUPER_ADMIN_HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
    assert await count_audit_logs(audit.PII_READ) == 0


@pytest.mark.asyncio
async def test_unversioned_path_is_not_routed() -> None:
    async with _client() as client:
        created = await _create(client)
        response = await client.get(f"/beneficiaries/{created['id']}", headers=PROGRAM_MANAGER_HEADERS)
        docs = await client.get("/docs")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
    assert "Deprecation" not in response.headers
    assert docs.status_code == 307
    assert docs.headers["location"] == "/v1/docs"


@pytest.mark.asyncio
async def test_privileged_read_survives_audit_store_outage(monkeypatch) -> None:
    def _unavailable() -> None:
        raise OSError("audit store unavailable")

    async with _client() as client:
        created = await _create(client)
        monkeypatch.setattr(audit, "SessionLocal", _unavailable)
        response = await client.get(f"/v1/beneficiaries/{created['id']}", headers=SUPER_ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["data"]["pii"]["first_name"] == "Ilir"
    assert await count_audit_logs(audit.PII_READ) == 0

from __future__ import annotations

from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from caseregistry.apps.api.main import create_app
from caseregistry.domain.models import FormResponse, ServiceDelivery
from caseregistry.persistence.db import SessionLocal
from caseregistry.services import audit
from caseregistry.tests.utils.auth import (
    FIELD_OPERATOR_HEADERS,
    PROGRAM_MANAGER_HEADERS,
    SUPER_ADMIN_HEADERS,
    SYSADMIN_HEADERS,
    count_audit_logs,
    create_form_template,
    fetch_audit_logs,
)


MAPPING = {
    "fields": {
        "firstName": "person.first",
        "lastName": "person.last",
        "dob": "person.dob",
        "nationalId": "person.natId",
        "phone": "contact.phone",
    },
    "strategies": ["nationalId", "name+dob", "retina-scan"],
}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _mapping_url(template_id: str) -> str:
    return f"/v1/forms/templates/{template_id}/beneficiary-mapping"


def _submission(data: dict[str, Any], **overrides: Any) -> dict[str, Any]:
    return {"entity_id": "p-1", "entity_type": "project", "data": data, **overrides}


async def _responses() -> list[FormResponse]:
    async with SessionLocal() as session:
        result = await session.execute(select(FormResponse).order_by(FormResponse.submitted_at))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_mapping_create_get_and_conflict() -> None:
    template_id = await create_form_template()
    async with _client() as client:
        missing = await client.get(_mapping_url(template_id), headers=PROGRAM_MANAGER_HEADERS)
        created = await client.post(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)
        duplicate = await client.post(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)
        fetched = await client.get(_mapping_url(template_id), headers=PROGRAM_MANAGER_HEADERS)

    assert missing.status_code == 404
    assert created.status_code == 201
    assert created.json()["data"]["mapping"]["strategies"] == ["nationalId", "name+dob"]
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "MAPPING_EXISTS"
    assert fetched.json()["data"]["mapping"]["fields"]["nationalId"] == "person.natId"
    assert await count_audit_logs(audit.MAPPING_CREATE) == 1


@pytest.mark.asyncio
async def test_mapping_validation_and_unknown_template() -> None:
    template_id = await create_form_template()
    async with _client() as client:
        not_object = await client.post(_mapping_url(template_id), json={"mapping": ["x"]}, headers=SYSADMIN_HEADERS)
        no_fields = await client.post(
            _mapping_url(template_id), json={"mapping": {"strategies": []}}, headers=SYSADMIN_HEADERS
        )
        unknown = await client.post(_mapping_url("missing-template"), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)

    assert not_object.status_code == 400
    assert not_object.json()["error"]["code"] == "INVALID_MAPPING"
    assert no_fields.status_code == 400
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_mapping_put_creates_then_replaces() -> None:
    template_id = await create_form_template()
    async with _client() as client:
        first = await client.put(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SUPER_ADMIN_HEADERS)
        second = await client.put(
            _mapping_url(template_id),
            json={"mapping": {"fields": {"phone": "tel"}, "strategies": ["phone+dob"]}},
            headers=SUPER_ADMIN_HEADERS,
        )

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["data"]["mapping"] == {"fields": {"phone": "tel"}, "strategies": ["phone+dob"]}
    assert await count_audit_logs(audit.MAPPING_CREATE) == 1
    assert await count_audit_logs(audit.MAPPING_UPDATE) == 1


@pytest.mark.asyncio
async def test_mapping_writes_require_admin_roles() -> None:
    template_id = await create_form_template()
    async with _client() as client:
        response = await client.post(
            _mapping_url(template_id), json={"mapping": MAPPING}, headers=PROGRAM_MANAGER_HEADERS
        )
    assert response.status_code == 403
    assert await count_audit_logs(audit.RBAC_FORBIDDEN) == 1


@pytest.mark.asyncio
async def test_submissions_deduplicate_through_mapping() -> None:
    template_id = await create_form_template()
    url = f"/v1/forms/templates/{template_id}/responses"
    async with _client() as client:
        await client.post(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)
        first = await client.post(
            url,
            json=_submission({"person": {"first": "Ilir", "last": "Berisha", "dob": "1990-05-02", "natId": "A123"}}),
            headers=FIELD_OPERATOR_HEADERS,
        )
        second = await client.post(
            url,
            json=_submission(
                {"person": {"first": "ilir", "last": "BERISHA", "dob": "02.05.1990"}},
                entity_id="sp-9",
                entity_type="subproject",
            ),
            headers=FIELD_OPERATOR_HEADERS,
        )
        links = await client.get(
            f"/v1/beneficiaries/{first.json()['data']['beneficiary_id']}/entities",
            headers=PROGRAM_MANAGER_HEADERS,
        )

    assert first.status_code == 201
    assert first.json()["data"]["beneficiary_created"] is True
    assert second.status_code == 201
    assert second.json()["data"]["beneficiary_created"] is False
    assert second.json()["data"]["beneficiary_id"] == first.json()["data"]["beneficiary_id"]
    assert {(item["entity_id"], item["entity_type"]) for item in links.json()["data"]["items"]} == {
        ("p-1", "project"),
        ("sp-9", "subproject"),
    }
    stored = await _responses()
    assert [row.beneficiary_id for row in stored] == [first.json()["data"]["beneficiary_id"]] * 2
    assert stored[0].submitted_by == FIELD_OPERATOR_HEADERS["X-User-Id"]
    assert await count_audit_logs(audit.FORM_RESPONSE_SUBMIT) == 2


@pytest.mark.asyncio
async def test_submission_without_mapping_stores_unlinked_response() -> None:
    template_id = await create_form_template()
    async with _client() as client:
        response = await client.post(
            f"/v1/forms/templates/{template_id}/responses",
            json=_submission({"person": {"natId": "A123"}}, latitude=42.66, longitude=21.16),
            headers=FIELD_OPERATOR_HEADERS,
        )

    assert response.status_code == 201
    assert response.json()["data"]["beneficiary_id"] is None
    [stored] = await _responses()
    assert stored.beneficiary_id is None
    assert stored.latitude == pytest.approx(42.66)


@pytest.mark.asyncio
async def test_explicit_beneficiary_id_skips_resolution() -> None:
    template_id = await create_form_template()
    url = f"/v1/forms/templates/{template_id}/responses"
    async with _client() as client:
        await client.post(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)
        created = await client.post(
            "/v1/beneficiaries", json={"national_id": "Z9"}, headers=PROGRAM_MANAGER_HEADERS
        )
        beneficiary_id = created.json()["data"]["id"]
        linked = await client.post(
            url,
            json=_submission({"person": {"natId": "OTHER"}}, beneficiary_id=beneficiary_id),
            headers=FIELD_OPERATOR_HEADERS,
        )
        unknown = await client.post(
            url,
            json=_submission({"person": {}}, beneficiary_id="no-such-beneficiary"),
            headers=FIELD_OPERATOR_HEADERS,
        )
        listed = await client.get("/v1/beneficiaries", headers=PROGRAM_MANAGER_HEADERS)

    assert linked.status_code == 201
    assert linked.json()["data"]["beneficiary_id"] == beneficiary_id
    assert linked.json()["data"]["beneficiary_created"] is False
    assert unknown.status_code == 400
    assert listed.json()["data"]["total_items"] == 1


@pytest.mark.asyncio
async def test_submission_to_unknown_template_is_404() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/forms/templates/nope/responses",
            json=_submission({}),
            headers=FIELD_OPERATOR_HEADERS,
        )
    assert response.status_code == 404
    assert await count_audit_logs(audit.FORM_RESPONSE_SUBMIT) == 0


@pytest.mark.asyncio
async def test_submission_with_missing_keys_rolls_back(monkeypatch) -> None:
    from caseregistry.core.config import get_settings

    template_id = await create_form_template()
    async with _client() as client:
        await client.post(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)
        monkeypatch.delenv("BENEFICIARY_ENC_KEY")
        get_settings.cache_clear()
        response = await client.post(
            f"/v1/forms/templates/{template_id}/responses",
            json=_submission({"person": {"natId": "A123"}}),
            headers=FIELD_OPERATOR_HEADERS,
        )

    assert response.status_code == 500
    assert await _responses() == []
    assert await count_audit_logs(audit.FORM_RESPONSE_SUBMIT) == 0


async def _deliveries() -> list[ServiceDelivery]:
    async with SessionLocal() as session:
        result = await session.execute(select(ServiceDelivery).order_by(ServiceDelivery.delivered_at))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_submission_records_service_deliveries() -> None:
    template_id = await create_form_template()
    url = f"/v1/forms/templates/{template_id}/responses"
    person = {"person": {"first": "Ilir", "last": "Berisha", "dob": "1990-05-02", "natId": "A123"}}
    async with _client() as client:
        await client.post(_mapping_url(template_id), json={"mapping": MAPPING}, headers=SYSADMIN_HEADERS)
        first = await client.post(
            url,
            json=_submission(
                person,
                services=[
                    {"service_id": "svc-food", "delivered_at": "2024-03-01T09:00:00Z", "notes": "first visit"},
                    {"notes": "forgot the service"},
                ],
            ),
            headers=FIELD_OPERATOR_HEADERS,
        )
        await client.post(
            url,
            json=_submission(
                person,
                services=[{"service_id": "svc-shelter", "delivered_at": "2024-04-01T09:00:00Z", "staff_user_id": "u-x"}],
            ),
            headers=FIELD_OPERATOR_HEADERS,
        )
        beneficiary_id = first.json()["data"]["beneficiary_id"]
        recent = await client.get(f"/v1/beneficiaries/{beneficiary_id}/services", headers=PROGRAM_MANAGER_HEADERS)
        history = await client.get(
            f"/v1/beneficiaries/{beneficiary_id}/services/history", headers=PROGRAM_MANAGER_HEADERS
        )
        since = await client.get(
            f"/v1/beneficiaries/{beneficiary_id}/services/history",
            params={"from_date": "2024-03-15T00:00:00Z"},
            headers=PROGRAM_MANAGER_HEADERS,
        )

    assert first.status_code == 201
    assert first.json()["data"]["services"] == {
        "requested": 2,
        "created": 1,
        "skipped": [{"service_id": "unknown", "reason": "missing service_id"}],
    }
    assert [item["service_id"] for item in recent.json()["data"]["items"]] == ["svc-shelter", "svc-food"]
    assert recent.json()["data"]["total_items"] == 2
    assert [item["service_id"] for item in history.json()["data"]["items"]] == ["svc-food", "svc-shelter"]
    assert [item["service_id"] for item in since.json()["data"]["items"]] == ["svc-shelter"]

    food, shelter = await _deliveries()
    assert food.staff_user_id == FIELD_OPERATOR_HEADERS["X-User-Id"]
    assert food.notes == "first visit"
    assert food.entity_id == "p-1"
    assert food.form_response_id == first.json()["data"]["id"]
    assert shelter.staff_user_id == "u-x"

    [audit_row, _] = await fetch_audit_logs(audit.FORM_RESPONSE_SUBMIT)
    assert audit_row.details["services"]["created"] == 1
    assert audit_row.details["services"]["requested"] == 2


@pytest.mark.asyncio
async def test_services_without_a_beneficiary_are_skipped() -> None:
    template_id = await create_form_template()
    async with _client() as client:
        response = await client.post(
            f"/v1/forms/templates/{template_id}/responses",
            json=_submission({"person": {"natId": "A123"}}, services=[{"service_id": "svc-food"}]),
            headers=FIELD_OPERATOR_HEADERS,
        )

    assert response.status_code == 201
    assert response.json()["data"]["services"] == {
        "requested": 1,
        "created": 0,
        "skipped": [{"service_id": "svc-food", "reason": "no beneficiary linked"}],
    }
    assert await _deliveries() == []


@pytest.mark.asyncio
async def test_service_listing_requires_read_role_and_known_beneficiary() -> None:
    async with _client() as client:
        created = await client.post("/v1/beneficiaries", json={"national_id": "Z9"}, headers=PROGRAM_MANAGER_HEADERS)
        beneficiary_id = created.json()["data"]["id"]
        empty = await client.get(f"/v1/beneficiaries/{beneficiary_id}/services", headers=PROGRAM_MANAGER_HEADERS)
        denied = await client.get(f"/v1/beneficiaries/{beneficiary_id}/services", headers=FIELD_OPERATOR_HEADERS)
        missing = await client.get("/v1/beneficiaries/nope/services/history", headers=PROGRAM_MANAGER_HEADERS)

    assert empty.status_code == 200
    assert empty.json()["data"]["items"] == []
    assert empty.json()["data"]["total_items"] == 0
    assert denied.status_code == 403
    assert missing.status_code == 404

from __future__ import annotations

import pytest

from app.api.v1.endpoints.forms import get_snapshot_service
from app.core.config import settings
from app.main import app
from app.services.snapshot_service import SnapshotService


API = settings.API_PREFIX

SCHEMA = {
    "display": "form",
    "components": [
        {"type": "textfield", "key": "name", "label": "Name", "input": True},
        {"type": "button", "key": "submit", "label": "Submit", "input": True},
    ],
}


@pytest.fixture
def snapshots(form_repo):
    service = SnapshotService(form_repo)

    def _override() -> SnapshotService:
        return service

    app.dependency_overrides[get_snapshot_service] = _override
    return service


@pytest.mark.asyncio
async def test_create_form(client, snapshots, form_repo, requester_headers):
    resp = await client.post(
        f"{API}/forms",
        json={"name": "Wildfire Report", "enableStatusUpdates": True},
        headers=requester_headers,
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["name"] == "Wildfire Report"
    assert body["enableStatusUpdates"] is True
    assert body["createdBy"] == "user-1"
    assert body["id"] in form_repo.forms
    form_repo.session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_version_defaults_display_name_to_form_name(client, snapshots, form_repo, requester_headers):
    form = form_repo.add_form("Wildfire Report")

    first = await client.post(f"{API}/forms/{form.id}/versions", json={"schema": SCHEMA}, headers=requester_headers)
    second = await client.post(
        f"{API}/forms/{form.id}/versions",
        json={"schema": SCHEMA, "displayName": "Wildfire Report 2024"},
        headers=requester_headers,
    )

    assert first.status_code == 201
    assert first.json()["version"] == 1
    assert first.json()["snapshotName"] == "wildfire_report"
    assert first.json()["createdBy"] == "user-1"
    assert second.json()["version"] == 2
    assert second.json()["snapshotName"] == "wildfire_report_2024"


@pytest.mark.asyncio
async def test_publish_invalid_schema_returns_validation_errors(client, snapshots, form_repo, requester_headers):
    form = form_repo.add_form("Broken")

    resp = await client.post(
        f"{API}/forms/{form.id}/versions",
        json={"schema": {"components": [{"type": "textfield", "input": True}]}},
        headers=requester_headers,
    )

    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "validation_error"
    assert body["errors"]
    assert form_repo.versions == []


@pytest.mark.asyncio
async def test_publish_to_unknown_form_is_404(client, snapshots):
    resp = await client.post(f"{API}/forms/nope/versions", json={"schema": SCHEMA})
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_list_and_get_versions(client, snapshots, form_repo):
    form = form_repo.add_form("Intake")
    form_repo.add_version(form.id, 1, SCHEMA, snapshot_name="intake")
    form_repo.add_version(form.id, 2, {"components": []}, snapshot_name="intake")

    listed = await client.get(f"{API}/forms/{form.id}/versions")
    assert [v["version"] for v in listed.json()] == [1, 2]

    latest = await client.get(f"{API}/forms/{form.id}/versions/latest")
    assert latest.status_code == 200
    assert latest.json()["version"] == 2
    assert latest.json()["schema"] == {"components": []}

    first = await client.get(f"{API}/forms/{form.id}/versions/1")
    assert first.json()["schema"] == SCHEMA


@pytest.mark.asyncio
async def test_bad_version_selector_is_422(client, snapshots, form_repo):
    form = form_repo.add_form("Intake")

    resp = await client.get(f"{API}/forms/{form.id}/versions/v2")

    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_publish_with_punctuation_only_display_name_is_422(client, snapshots, form_repo, requester_headers):
    form = form_repo.add_form("Intake")

    resp = await client.post(
        f"{API}/forms/{form.id}/versions",
        json={"schema": SCHEMA, "displayName": "!!!"},
        headers=requester_headers,
    )

    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"
    assert form_repo.versions == []


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/forms/not-a-uuid/versions", "/forms/not-a-uuid/versions/latest"])
async def test_malformed_form_id_is_404_against_real_repository(client, path):
    resp = await client.get(f"{API}{path}")

    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"

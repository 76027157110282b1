from __future__ import annotations

import inspect
import io
import json
import zipfile

from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from capledger.infrastructure.blobstore import InMemoryBlobStore
from capledger.infrastructure.config import DatabaseConfig
from capledger.infrastructure.db import make_engine_and_session
from capledger.web.dependencies import get_blob_store, get_reference_catalog, get_session_factory
from capledger.web.main import create_application
from tests.support import CASE_ITEM, CLAIMS_ITEM, make_catalog


def build_app_with_db() -> TestClient:
    _, SessionLocal = make_engine_and_session(
        DatabaseConfig(backend="sqlite", sqlite_path=":memory:"), create_schema=True
    )
    catalog = make_catalog()
    blob_store = InMemoryBlobStore()

    app = create_application()
    app.dependency_overrides[get_session_factory] = lambda: SessionLocal
    app.dependency_overrides[get_reference_catalog] = lambda: catalog
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    return TestClient(app)


def start_and_rate(client: TestClient, item_code: str, levels: list[int]) -> str:
    response = client.post("/api/assessments", json={"item_code": item_code, "tags": ["#api"]})
    assert response.status_code == 201
    assessment_id = response.json()["id"]
    for index, level in enumerate(levels):
        saved = client.put(
            f"/api/assessments/{assessment_id}/ratings/{index}", json={"level": level, "notes": "ok"}
        )
        assert saved.status_code == 200
    return assessment_id


def test_health() -> None:
    client = build_app_with_db()
    assert client.get("/api/health").json() == {"status": "ok"}


def test_assessment_lifecycle_over_http() -> None:
    client = build_app_with_db()
    assessment_id = start_and_rate(client, CASE_ITEM, [3, 4])

    detail = client.get(f"/api/assessments/{assessment_id}").json()
    assert detail["assessment"]["status"] == "in_progress"
    assert detail["progress"] == 67
    assert [r["level"] for r in detail["ratings"]] == [3, 4]

    finalized = client.post(f"/api/assessments/{assessment_id}/finalize")
    assert finalized.status_code == 200
    assert finalized.json()["score"] == 3.5

    state = client.get(f"/api/items/{CASE_ITEM}/state").json()
    assert state["state"] == "finalized"
    assert state["current"]["id"] == assessment_id

    edited = client.post(f"/api/assessments/{assessment_id}/edit").json()
    assert edited["status"] == "in_progress"
    history = client.get("/api/history", params={"item_code": CASE_ITEM}).json()
    assert len(history) == 1
    assert history[0]["score"] == 3.5

    reverted = client.post(f"/api/assessments/{assessment_id}/revert").json()
    assert reverted["status"] == "finalized"
    assert client.get("/api/history").json() == []


def test_error_statuses() -> None:
    client = build_app_with_db()
    assessment_id = start_and_rate(client, CASE_ITEM, [3])

    missing = client.get("/api/assessments/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["error"] == "AssessmentNotFoundError"

    duplicate = client.post("/api/assessments", json={"item_code": CASE_ITEM})
    assert duplicate.status_code == 409

    unknown_item = client.post("/api/assessments", json={"item_code": "XX_Nothing"})
    assert unknown_item.status_code == 404

    out_of_range = client.put(f"/api/assessments/{assessment_id}/ratings/7", json={"level": 3})
    assert out_of_range.status_code == 422
    assert out_of_range.json()["details"]["field"] == "question_index"

    bad_level = client.put(f"/api/assessments/{assessment_id}/ratings/0", json={"level": 9})
    assert bad_level.status_code == 422

    client.post(f"/api/assessments/{assessment_id}/finalize")
    discard = client.post(f"/api/assessments/{assessment_id}/discard")
    assert discard.status_code == 409


def test_items_and_averages() -> None:
    client = build_app_with_db()
    assessment_id = start_and_rate(client, CASE_ITEM, [4, 4, 5])
    client.post(f"/api/assessments/{assessment_id}/finalize")
    start_and_rate(client, CLAIMS_ITEM, [2])

    items = {row["item_code"]: row for row in client.get("/api/items").json()}
    assert items[CASE_ITEM]["state"] == "finalized"
    assert items[CASE_ITEM]["score"] == 4.3
    assert items[CLAIMS_ITEM]["state"] == "in_progress"
    assert items[CLAIMS_ITEM]["progress"] == 33
    assert items["CM_Manage_Case"]["state"] == "absent"

    averages = {row["grouping_key"]: row for row in client.get("/api/groups/averages").json()}
    assert averages["Case Management"]["average"] == 4.3
    assert averages["Case Management"]["coverage"] == 0.5
    assert averages["Financial Management"]["average"] is None


def test_tags_endpoints() -> None:
    client = build_app_with_db()
    assessment_id = start_and_rate(client, CASE_ITEM, [3])

    updated = client.put(f"/api/assessments/{assessment_id}/tags", json={"tags": ["Review", "#api"]})
    assert updated.json()["tags"] == ["#review", "#api"]

    tags = client.get("/api/tags", params={"prefix": "rev"}).json()
    assert [t["name"] for t in tags] == ["#review"]

    client.post(f"/api/assessments/{assessment_id}/finalize")
    assert client.get("/api/tags/in-use").json() == ["#api", "#review"]

    tag_id = tags[0]["id"]
    assert client.delete(f"/api/tags/{tag_id}").status_code == 204
    assert client.delete(f"/api/tags/{tag_id}").status_code == 404


def test_attachment_upload_and_download() -> None:
    client = build_app_with_db()
    assessment_id = start_and_rate(client, CASE_ITEM, [3])

    uploaded = client.post(
        f"/api/assessments/{assessment_id}/attachments",
        data={"question_index": "0", "description": "minutes"},
        files={"file": ("minutes.txt", io.BytesIO(b"agreed"), "text/plain")},
    )
    assert uploaded.status_code == 201
    attachment = uploaded.json()
    assert attachment["file_name"] == "minutes.txt"
    assert attachment["file_size"] == 6

    listed = client.get(f"/api/assessments/{assessment_id}/attachments").json()
    assert [a["id"] for a in listed] == [attachment["id"]]

    download = client.get(f"/api/attachments/{attachment['id']}")
    assert download.status_code == 200
    assert download.content == b"agreed"

    assert client.delete(f"/api/attachments/{attachment['id']}").status_code == 204
    assert client.get(f"/api/assessments/{assessment_id}/attachments").json() == []


def test_export_and_import_round_trip() -> None:
    source = build_app_with_db()
    assessment_id = start_and_rate(source, CASE_ITEM, [3, 3])
    source.post(f"/api/assessments/{assessment_id}/finalize")

    exported = source.get("/api/exports/json")
    assert exported.status_code == 200
    document = exported.json()
    assert document["formatVersion"] == "1.0"

    target = build_app_with_db()
    payload = json.dumps(document).encode()

    validated = target.post(
        "/api/imports/validate", files={"file": ("export.json", payload, "application/json")}
    ).json()
    assert validated["ok"] is True
    assert validated["metadata"]["totalAssessments"] == 1

    imported = target.post(
        "/api/imports/json", files={"file": ("export.json", payload, "application/json")}
    ).json()
    assert imported["success"] is True
    assert imported["imported_as_current"] == 1
    assert target.get(f"/api/items/{CASE_ITEM}/state").json()["state"] == "finalized"

    again = target.post(
        "/api/imports/json", files={"file": ("export.json", payload, "application/json")}
    ).json()
    assert again["skipped"] == 1


def test_import_rejection_is_reported() -> None:
    client = build_app_with_db()

    response = client.post(
        "/api/imports/json", files={"file": ("broken.json", b"{nope", "application/json")}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["errors"] == ["Invalid JSON format"]


def test_corrupt_archive_is_reported() -> None:
    client = build_app_with_db()
    bio = io.BytesIO()
    with zipfile.ZipFile(bio, "w") as zf:
        zf.writestr("data.json", b"\xff\xfe{")

    response = client.post(
        "/api/imports/archive", files={"file": ("export.zip", bio.getvalue(), "application/zip")}
    )

    assert response.status_code == 200
    assert response.json()["errors"] == ["data.json is not valid UTF-8"]


def test_archive_and_xlsx_downloads() -> None:
    client = build_app_with_db()
    assessment_id = start_and_rate(client, CASE_ITEM, [5])
    client.post(f"/api/assessments/{assessment_id}/finalize")

    archive = client.get("/api/exports/archive")
    assert archive.status_code == 200
    assert archive.headers["content-type"] == "application/zip"
    assert archive.content[:2] == b"PK"

    imported = client.post(
        "/api/imports/archive", files={"file": ("export.zip", archive.content, "application/zip")}
    ).json()
    assert imported["skipped"] == 1

    xlsx = client.get("/api/exports/xlsx", params={"scope": "item", "item_code": CASE_ITEM})
    assert xlsx.status_code == 200
    assert "attachment; filename=capledger-summary-item-" in xlsx.headers["content-disposition"]

    missing_code = client.get("/api/exports/xlsx", params={"scope": "item"})
    assert missing_code.status_code == 422


def test_upload_and_import_handlers_run_in_threadpool() -> None:
    """Handlers that read files and write the store must not block the event loop."""
    app = create_application()
    endpoints = {
        (route.path, method): route.endpoint
        for route in app.routes
        if isinstance(route, APIRoute)
        for method in route.methods
    }

    for path in (
        "/api/assessments/{assessment_id}/attachments",
        "/api/imports/validate",
        "/api/imports/json",
        "/api/imports/archive",
    ):
        assert not inspect.iscoroutinefunction(endpoints[(path, "POST")])

import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from catalog_pipeline import api
from catalog_pipeline.db import Database
from catalog_pipeline.models import ListenerProfile, Release, ReleaseSignal


@pytest.fixture
def db_path(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = str(Path(tmpdir) / "api.db")
        monkeypatch.setenv("CATALOG_DB_PATH", path)
        monkeypatch.delenv("REINDEX_SERVICE_URL", raising=False)

        seed = Database(path)
        now = datetime.now(timezone.utc)
        for release_id, creator_id, days_old in (("A", "creator-a", 19), ("B", "creator-b", 370)):
            created = now - timedelta(days=days_old)
            seed.create_release(
                Release(id=release_id, title=f"Echo {release_id}", creator_id=creator_id,
                        created_at=created, updated_at=created)
            )
        seed.upsert_release_signal(ReleaseSignal(release_id="A", play_count=5000, editorial_weight=2))
        seed.upsert_release_signal(ReleaseSignal(release_id="B", play_count=120, editorial_weight=4))
        seed.upsert_listener_profile(ListenerProfile(user_id="u1", followed_creators=["creator-b"]))
        seed.close()

        yield path


@pytest.fixture
def client(db_path):
    with TestClient(api.app) as client:
        yield client


def test_search_endpoint(client):
    response = client.get("/api/catalog/search", params={"query": "echo"})

    assert response.status_code == 200
    body = response.json()
    assert [release["id"] for release in body["releases"]] == ["A", "B"]
    assert body["meta"]["region"] == "global"
    assert body["meta"]["personalization"]["requested"] is False


def test_search_personalized(client):
    response = client.get(
        "/api/catalog/search",
        params={"query": "echo", "personalized": "true", "userId": "u1", "region": "ng"},
        headers={"x-request-id": "req-1"},
    )

    body = response.json()
    assert body["meta"]["region"] == "ng"
    assert body["meta"]["personalization"]["applied"] is True
    assert body["meta"]["personalization"]["matched_signals"]["followed_creators"] == 1
    release_b = next(release for release in body["releases"] if release["id"] == "B")
    assert release_b["personalization"]["reasons"] == ["followed-creator"]


@pytest.mark.parametrize("param", ["take", "trackTake"])
def test_search_rejects_take_over_limit(client, param):
    response = client.get("/api/catalog/search", params={"query": "echo", param: 51})
    assert response.status_code == 422


def test_search_requires_query(client):
    assert client.get("/api/catalog/search").status_code == 422


def test_rebuild_schedules_every_release(client):
    response = client.post("/api/catalog/rebuild", json={"regions": ["us"]})

    assert response.json() == {"status": "success", "scheduled": 2}
    assert client.get("/api/catalog/refreshes/pending").json() == {"pending": 2}


def wait_for_audit(client, event: str) -> list[dict]:
    # Telemetry lands in the background after the response is sent
    for _ in range(100):
        logs = client.get("/api/audit/logs", params={"limit": 100}).json()["logs"]
        matching = [log for log in logs if log["event"] == event]
        if matching:
            return matching
        time.sleep(0.02)
    return []


def test_list_releases(client):
    response = client.get("/api/catalog/releases")

    assert response.status_code == 200
    body = response.json()
    assert [release["id"] for release in body["releases"]] == ["A", "B"]
    assert body["releases"][0]["tracks"] == []
    assert body["pagination"] == {"skip": 0, "take": 20, "total": 2, "has_more": False}


def test_list_releases_filters_and_paginates(client):
    by_creator = client.get("/api/catalog/releases", params={"creatorId": "creator-b"}).json()
    first_page = client.get("/api/catalog/releases", params={"search": "echo", "take": 1}).json()

    assert [release["id"] for release in by_creator["releases"]] == ["B"]
    assert [release["id"] for release in first_page["releases"]] == ["A"]
    assert first_page["pagination"]["has_more"] is True


@pytest.mark.parametrize("params", [{"take": 51}, {"take": 0}, {"skip": -1}])
def test_list_releases_rejects_bad_paging(client, params):
    assert client.get("/api/catalog/releases", params=params).status_code == 422


def test_list_releases_is_audited(client):
    client.get("/api/catalog/releases", params={"creatorId": "creator-a"}, headers={"x-request-id": "req-7"})

    logs = wait_for_audit(client, "catalog.releases.listed")

    assert len(logs) == 1
    assert logs[0]["request_id"] == "req-7"
    assert logs[0]["metadata"]["creator_id"] == "creator-a"
    assert logs[0]["metadata"]["result_count"] == 1
    assert wait_for_audit(client, "analytics.catalog.releases.listed")


def test_get_release(client):
    response = client.get("/api/catalog/releases/B", params={"userId": "u1"})

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "B"
    assert body["creator_id"] == "creator-b"
    assert body["tracks"] == []

    logs = wait_for_audit(client, "catalog.release.viewed")
    assert logs[0]["target"] == "B"
    assert logs[0]["actor_user_id"] == "u1"
    assert logs[0]["metadata"] == {"creator_id": "creator-b", "track_count": 0}
    assert wait_for_audit(client, "analytics.catalog.release.viewed")[0]["target"] == "B"


def test_get_missing_release_returns_404(client):
    response = client.get("/api/catalog/releases/missing")

    assert response.status_code == 404
    assert response.json() == {"detail": "Release not found"}


def test_audit_logs_default_and_limit(client):
    for _ in range(3):
        client.get("/api/catalog/releases/A")
    wait_for_audit(client, "catalog.release.viewed")

    response = client.get("/api/audit/logs", params={"limit": 1})

    assert response.status_code == 200
    assert len(response.json()["logs"]) == 1


@pytest.mark.parametrize("limit", [0, 101])
def test_audit_logs_rejects_limit_out_of_range(client, limit):
    assert client.get("/api/audit/logs", params={"limit": limit}).status_code == 422

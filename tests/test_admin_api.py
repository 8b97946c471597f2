import copy

import pytest
from fastapi.testclient import TestClient

from nebularnews import admin
from nebularnews.config import DEFAULT_CONFIG
from nebularnews.storage import claim_due_jobs, enqueue_job, init_db, insert_article

TOKEN = "test-token"
HEADERS = {"X-Admin-Token": TOKEN}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("NN_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("NN_ADMIN_TOKEN", TOKEN)
    return TestClient(admin.app)


@pytest.fixture
def state(tmp_path):
    conn = init_db(str(tmp_path / "nebularnews.sqlite3"))
    yield conn
    conn.close()


def _seed_article(conn):
    article_id, _ = insert_article(
        conn,
        canonical_url="https://news.example.com/a",
        content_hash="hash-a",
        title="A",
        author=None,
        excerpt=None,
        content_html=None,
        content_text="body",
        published_at=None,
        fetched_at="2025-03-10T12:00:00.000000+00:00",
        image_url=None,
    )
    return article_id


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_token_required(client):
    assert client.get("/api/jobs/counts").status_code == 401
    assert client.get("/admin/config/runtime").status_code == 401
    assert client.get("/api/jobs/counts", headers=HEADERS).status_code == 200


def test_runtime_config_round_trip(client):
    response = client.get("/admin/config/runtime", headers=HEADERS)
    assert response.json()["config"] == DEFAULT_CONFIG

    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["retention"]["days"] = 14
    assert (
        client.put("/admin/config/runtime", json={"config": custom}, headers=HEADERS).status_code
        == 200
    )
    assert client.get("/admin/config/runtime", headers=HEADERS).json()["config"] == custom

    custom["retention"]["mode"] = "shred"
    response = client.put("/admin/config/runtime", json={"config": custom}, headers=HEADERS)
    assert response.status_code == 400


def test_feed_create_validates_url(client):
    assert (
        client.post("/api/feeds", json={"url": "not a url"}, headers=HEADERS).status_code == 400
    )
    created = client.post(
        "/api/feeds", json={"url": "https://news.example.com/feed"}, headers=HEADERS
    ).json()
    listed = client.get("/api/feeds", headers=HEADERS).json()
    assert [feed["id"] for feed in listed] == [created["id"]]


def test_pull_start_then_status(client):
    started = client.post("/api/pull", json={"cycles": 1}, headers=HEADERS).json()
    assert started["started"] is True

    status = client.get(
        "/api/pull/status", params={"run_id": started["run_id"]}, headers=HEADERS
    ).json()
    assert status["run_id"] == started["run_id"]
    assert status["status"] == "success"
    assert status["trigger"] == "api"

    missing = client.get("/api/pull/status", params={"run_id": "pull_missing"}, headers=HEADERS)
    assert missing.status_code == 404


def test_job_actions_map_errors(client, state):
    job_id = enqueue_job(state, "summarize", _seed_article(state))
    claim_due_jobs(state, "worker-a", limit=1, lease_seconds=600)

    assert client.post(f"/api/jobs/{job_id}/cancel", headers=HEADERS).status_code == 409
    assert client.delete(f"/api/jobs/{job_id}", headers=HEADERS).status_code == 409
    assert client.post("/api/jobs/job_missing/run-now", headers=HEADERS).status_code == 404
    detail = client.get(f"/api/jobs/{job_id}", headers=HEADERS).json()
    assert detail["status"] == "running"
    assert detail["runs"] == []
    assert client.get("/api/jobs", params={"status": "bogus"}, headers=HEADERS).status_code == 400


def test_feedback_queues_profile_refresh(client, state):
    article_id = _seed_article(state)

    bad = client.post(
        f"/api/articles/{article_id}/feedback", json={"rating": 9}, headers=HEADERS
    )
    missing = client.post("/api/articles/art_missing/feedback", json={"rating": 3}, headers=HEADERS)
    ok = client.post(
        f"/api/articles/{article_id}/feedback", json={"rating": 5, "comment": "great"}, headers=HEADERS
    )

    assert bad.status_code == 400
    assert missing.status_code == 404
    assert ok.status_code == 200
    counts = client.get("/api/jobs/counts", headers=HEADERS).json()
    assert counts["pending"] == 1


def test_orphan_preview_and_dry_run(client, state):
    article_id = _seed_article(state)

    preview = client.get("/api/admin/orphans/preview", headers=HEADERS).json()
    run = client.post(
        "/api/admin/orphans/run", json={"limit": 5, "dry_run": True}, headers=HEADERS
    ).json()

    assert preview["sample_article_ids"] == [article_id]
    assert run["dry_run"] is True
    assert run["orphan_count_after"] == 1


def test_retention_run_disabled_by_default(client):
    response = client.post("/api/admin/retention/run", headers=HEADERS)
    assert response.json()["enabled"] is False


def test_tick_is_accepted(client):
    response = client.post("/internal/tick", json={"cron": "*/5 * * * *"}, headers=HEADERS)
    assert response.status_code == 202
    assert response.json() == {"accepted": True, "cron": "*/5 * * * *"}

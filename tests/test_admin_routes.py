# FILE: tests/test_admin_routes.py

import asyncio

import pytest
from fastapi.testclient import TestClient

from bookcovers.app import app
from bookcovers.models.images import CoverImageSource
from bookcovers.providers.registry import FetcherRegistry
from bookcovers.routes import admin, health
from bookcovers.services.cleanup import CoverCleanupService
from bookcovers.services.local_cache import LocalCoverCache
from bookcovers.services.orchestrator import CoverOrchestrator
from bookcovers.services.provenance import ProvenanceLog, ProvenanceTracker
from bookcovers.services.s3_cache import S3CoverCache

PREFIX = "images/book-covers/"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def s3_cache(settings, fake_s3):
    return S3CoverCache(settings, client=fake_s3)


@pytest.fixture
def cleanup_service(settings, s3_cache, monkeypatch):
    service = CoverCleanupService(s3_cache=s3_cache, settings=settings)
    monkeypatch.setattr(admin, "get_cleanup_service", lambda: service)
    return service


@pytest.fixture
def registry(settings, stub_fetcher):
    return FetcherRegistry(settings=settings, fetchers={
        source: stub_fetcher(source)
        for source in (CoverImageSource.GOOGLE_BOOKS, CoverImageSource.OPEN_LIBRARY, CoverImageSource.LONGITOOD)
    })


@pytest.fixture
def flagged_bucket(fake_s3, make_image):
    fake_s3.put(f"{PREFIX}111-lg-google-books.jpg", make_image(400, 600))
    fake_s3.put(f"{PREFIX}222-lg-google-books.jpg", make_image(900, 400))
    return fake_s3


def test_dry_run_returns_text_report(client, cleanup_service, flagged_bucket):
    response = client.get("/admin/s3-cleanup/dry-run", params={"limit": 0})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text.startswith("S3 Cover Cleanup Dry Run\n")
    assert "Total scanned: 2" in response.text
    assert f"{PREFIX}222-lg-google-books.jpg" in response.text
    assert not any(op == "delete_object" for op, _ in flagged_bucket.calls)


def test_move_returns_camel_case_summary(client, cleanup_service, flagged_bucket):
    response = client.post(
        "/admin/s3-cleanup/move-flagged",
        params={"quarantinePrefix": "images/quarantine/", "limit": -1},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["quarantinePrefix"] == "images/quarantine/"
    assert body["totalScanned"] == 2
    assert body["movedCount"] == 1
    assert body["movedFileKeys"] == [
        f"{PREFIX}222-lg-google-books.jpg -> images/quarantine/222-lg-google-books.jpg"
    ]
    assert body["failedCount"] == 0
    assert "images/quarantine/222-lg-google-books.jpg" in flagged_bucket.objects


def test_move_rejects_quarantine_inside_prefix(client, cleanup_service, flagged_bucket):
    response = client.post(
        "/admin/s3-cleanup/move-flagged",
        params={"prefix": "covers/", "quarantinePrefix": "covers/"},
    )

    assert response.status_code == 400
    assert "error" in response.json()
    assert flagged_bucket.calls == []


def test_cleanup_requires_object_storage(client, settings, monkeypatch):
    settings.s3_enabled = False
    service = CoverCleanupService(s3_cache=S3CoverCache(settings), settings=settings)
    monkeypatch.setattr(admin, "get_cleanup_service", lambda: service)

    dry_run = client.get("/admin/s3-cleanup/dry-run")
    move = client.post("/admin/s3-cleanup/move-flagged")

    assert dry_run.status_code == 503
    assert move.status_code == 503
    assert move.json() == {"error": "Object storage is not configured"}


def test_cleanup_storage_failure_is_500(client, cleanup_service, fake_s3):
    fake_s3.fail.add(("list_objects_v2", None))
    response = client.get("/admin/s3-cleanup/dry-run")

    assert response.status_code == 500
    assert response.json()["error"].startswith("Dry run failed")


def test_recent_provenance(client, settings, monkeypatch):
    log = ProvenanceLog(settings)
    for key in ("a", "b", "c"):
        asyncio.run(log.append(ProvenanceTracker(key).complete()))
    monkeypatch.setattr(admin, "get_provenance_log", lambda: log)

    response = client.get("/admin/provenance/recent", params={"limit": 2})

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [r["book_key"] for r in body["records"]] == ["b", "c"]

    assert client.get("/admin/provenance/recent", params={"limit": 0}).status_code == 422


def test_circuit_breaker_reset(client, registry, s3_cache, monkeypatch):
    monkeypatch.setattr(admin, "get_fetcher_registry", lambda: registry)
    monkeypatch.setattr(admin, "get_s3_cover_cache", lambda: s3_cache)
    for _ in range(registry.circuit_breaker.threshold):
        registry.circuit_breaker.record_failure("GOOGLE_BOOKS")
        s3_cache.circuit_breaker.record_failure("S3")

    response = client.post("/admin/circuit-breakers/reset", params={"resource": "GOOGLE_BOOKS"})

    assert response.status_code == 200
    assert registry.is_available(CoverImageSource.GOOGLE_BOOKS)
    assert response.json()["object_storage"]["S3"]["state"] == "OPEN"

    client.post("/admin/circuit-breakers/reset")
    assert s3_cache.is_available()


def test_health_reports_tiers_and_circuits(client, settings, registry, s3_cache, monkeypatch):
    local_cache = LocalCoverCache(settings)
    orchestrator = CoverOrchestrator(
        settings=settings, registry=registry, local_cache=local_cache,
        s3_cache=s3_cache, provenance_log=ProvenanceLog(settings),
    )
    monkeypatch.setattr(health, "get_fetcher_registry", lambda: registry)
    monkeypatch.setattr(health, "get_s3_cover_cache", lambda: s3_cache)
    monkeypatch.setattr(health, "get_local_cover_cache", lambda: local_cache)
    monkeypatch.setattr(health, "get_cover_orchestrator", lambda: orchestrator)
    registry.circuit_breaker.record_failure("LONGITOOD")

    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["provider_order"] == ["GOOGLE_BOOKS", "OPEN_LIBRARY", "LONGITOOD"]
    assert body["object_storage_configured"] is True
    assert body["local_cache"]["total_entries"] == 0
    assert body["background_refreshes"] == 0
    assert body["circuit_breakers"]["providers"]["LONGITOOD"]["consecutive_failures"] == 1


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "Book Cover Engine"

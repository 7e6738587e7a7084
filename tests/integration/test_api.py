# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Integration tests for the FastAPI endpoints."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tiace.api.app import create_app
from tiace.export.taxii import TAXII_MEDIA_TYPE

pytestmark = pytest.mark.integration

TENANT = {"X-Tenant-ID": "tenant-a"}
OTHER = {"X-Tenant-ID": "tenant-b"}

FEED_CSV = """\
type,value,confidence,severity,source,timestamp,tags
domain,evil.example.com,0.9,high,x,2026-02-01T00:00:00Z,c2
url,http://evil.example.com/login,0.8,critical,x,2026-02-02T00:00:00Z,phishing
hash,d41d8cd98f00b204e9800998ecf8427e,0.7,medium,x,2026-02-03T00:00:00Z,
"""


@pytest.fixture
def app(engine):
    return create_app(engine=engine)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def feed_file(tmp_path):
    path = tmp_path / "feed.csv"
    path.write_text(FEED_CSV)
    return path


@pytest.fixture
async def loaded(engine, tenant, feed_file):
    """tenant-a holds the indicators of FEED_CSV (plus derived ones)."""
    await engine.import_file(tenant, feed_file, feed_id="seed")
    return engine


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_health(self, client) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "tiace"
        assert "X-Request-ID" in resp.headers

    async def test_ready(self, client) -> None:
        resp = await client.get("/api/v1/ready")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ready"
        assert data["in_flight_syncs"] == 0
        assert data["scheduler_running"] is False

    async def test_metrics(self, client, loaded) -> None:
        resp = await client.get("/api/v1/metrics")
        assert resp.status_code == 200
        assert "tiace_indicators_total" in resp.text


# ---------------------------------------------------------------------------
# Tenancy and authentication
# ---------------------------------------------------------------------------


class TestAccess:
    async def test_tenant_header_required(self, client) -> None:
        resp = await client.get("/api/v1/search")
        assert resp.status_code == 403
        assert resp.json()["kind"] == "permission_denied"

    async def test_other_tenant_sees_nothing(self, client, loaded) -> None:
        resp = await client.get("/api/v1/search", headers=OTHER)
        assert resp.json()["total"] == 0

    async def test_api_keys(self, client, engine, loaded) -> None:
        engine.settings.api_keys = ["admin-key", "reader-key=readonly"]

        assert (await client.get("/api/v1/search", headers=TENANT)).status_code == 401
        bad = await client.get("/api/v1/search", headers={**TENANT, "X-API-Key": "nope"})
        assert bad.status_code == 403

        reader = {**TENANT, "X-API-Key": "reader-key"}
        assert (await client.get("/api/v1/search", headers=reader)).status_code == 200
        payload = {"feed_id": "x", "url": "https://x.test", "feed_type": "open-source", "format": "txt"}
        denied = await client.post("/api/v1/feeds", json=payload, headers=reader)
        assert denied.status_code == 403

        admin = {**TENANT, "X-API-Key": "admin-key"}
        assert (await client.get("/api/v1/feeds", headers=admin)).status_code == 200


# ---------------------------------------------------------------------------
# Search, hunt, detail
# ---------------------------------------------------------------------------


class TestQuery:
    async def test_search(self, client, loaded) -> None:
        resp = await client.get("/api/v1/search", params={"q": "evil", "kind": "domain"}, headers=TENANT)
        assert resp.status_code == 200
        data = resp.json()
        assert [i["value"] for i in data["items"]] == ["evil.example.com"]

    async def test_search_filters(self, client, loaded) -> None:
        resp = await client.get("/api/v1/search", params={"severity": "critical"}, headers=TENANT)
        assert [i["value"] for i in resp.json()["items"]] == ["http://evil.example.com/login"]
        resp = await client.get("/api/v1/search", params={"tag": "C2"}, headers=TENANT)
        assert [i["value"] for i in resp.json()["items"]] == ["evil.example.com"]

    @pytest.mark.parametrize(
        "params",
        [
            {"min_confidence": "2"},
            {"limit": "0"},
            {"start": "2026-03-01T00:00:00Z", "end": "2026-02-01T00:00:00Z"},
        ],
    )
    async def test_invalid_search(self, client, params) -> None:
        resp = await client.get("/api/v1/search", params=params, headers=TENANT)
        assert resp.status_code == 422

    async def test_hunt(self, client, loaded) -> None:
        resp = await client.get(
            "/api/v1/hunt", params={"q": "http://evil.example.com/login", "depth": 1}, headers=TENANT
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["depth"] == 1
        assert data["hits"][0]["value"] == "http://evil.example.com/login"
        assert "evil.example.com" in {e["record"].get("value") for e in data["linked"]}

    async def test_detail_and_delete(self, client, loaded) -> None:
        search = await client.get("/api/v1/search", params={"kind": "hash"}, headers=TENANT)
        indicator_id = search.json()["items"][0]["id"]

        detail = await client.get(f"/api/v1/indicators/{indicator_id}", headers=TENANT)
        assert detail.status_code == 200
        assert detail.json()["indicator"]["kind"] == "hash"
        assert "scoring" in detail.json()["enrichment"]["stages"]

        assert (await client.get(f"/api/v1/indicators/{indicator_id}", headers=OTHER)).status_code == 404

        deleted = await client.delete(f"/api/v1/indicators/{indicator_id}", headers=TENANT)
        assert deleted.json()["deleted"] == indicator_id
        assert (await client.get(f"/api/v1/indicators/{indicator_id}", headers=TENANT)).status_code == 404

    async def test_aggregates(self, client, loaded) -> None:
        resp = await client.get("/api/v1/aggregates", headers=TENANT)
        data = resp.json()
        assert data["by_severity"]["critical"] == 1
        assert data["sync_history"][0]["feed_id"] == "seed"

    async def test_changes(self, client, loaded) -> None:
        first = (await client.get("/api/v1/changes", headers=TENANT)).json()
        assert first["events"]
        assert first["lagged"] is False
        after = (await client.get("/api/v1/changes", params={"since": first["watermark"]}, headers=TENANT)).json()
        assert after["events"] == []
        assert after["watermark"] == first["watermark"]


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


class TestFeeds:
    async def test_lifecycle(self, client, feed_file) -> None:
        payload = {"feed_id": "local", "url": feed_file.as_uri(), "feed_type": "custom", "format": "csv"}
        created = await client.post("/api/v1/feeds", json=payload, headers=TENANT)
        assert created.status_code == 201
        assert created.json()["tenant_id"] == "tenant-a"
        assert (await client.post("/api/v1/feeds", json=payload, headers=TENANT)).status_code == 409

        listing = (await client.get("/api/v1/feeds", headers=TENANT)).json()
        assert [f["feed_id"] for f in listing["feeds"]] == ["local"]

        job = (await client.post("/api/v1/feeds/local/sync", headers=TENANT)).json()
        assert job["status"] == "succeeded"
        assert job["items_imported"] == 3

        history = (await client.get("/api/v1/feeds/local/history", headers=TENANT)).json()
        assert history["jobs"][0]["job_id"] == job["job_id"]
        state = (await client.get("/api/v1/feeds/local", headers=TENANT)).json()
        assert state["state"] == "succeeded"
        assert state["quality"]["accuracy"] == 1.0

        disabled = await client.post("/api/v1/feeds/local/disable", headers=TENANT)
        assert disabled.json()["enabled"] is False
        assert (await client.post("/api/v1/feeds/local/sync", headers=TENANT)).status_code == 409
        enabled = await client.post("/api/v1/feeds/local/enable", headers=TENANT)
        assert enabled.json()["enabled"] is True

        assert (await client.delete("/api/v1/feeds/local", headers=TENANT)).json() == {"removed": "local"}
        assert (await client.get("/api/v1/feeds/local", headers=TENANT)).status_code == 404

    async def test_invalid_feed(self, client) -> None:
        resp = await client.post("/api/v1/feeds", json={"feed_id": "x", "feed_type": "carrier-pigeon"}, headers=TENANT)
        assert resp.status_code == 422

    async def test_feed_for_other_tenant(self, client) -> None:
        payload = {"feed_id": "x", "tenant_id": "tenant-b", "url": "https://x.test", "feed_type": "open-source", "format": "txt"}
        resp = await client.post("/api/v1/feeds", json=payload, headers=TENANT)
        assert resp.status_code == 403

    async def test_sync_all_and_cancel_idle(self, client, feed_file) -> None:
        payload = {"feed_id": "local", "url": feed_file.as_uri(), "feed_type": "custom", "format": "csv"}
        await client.post("/api/v1/feeds", json=payload, headers=TENANT)
        jobs = (await client.post("/api/v1/feeds/sync", headers=TENANT)).json()["jobs"]
        assert [j["status"] for j in jobs] == ["succeeded"]
        assert (await client.post("/api/v1/feeds/cancel", headers=TENANT)).json() == {"jobs": []}
        assert (await client.post("/api/v1/feeds/missing/cancel", headers=TENANT)).status_code == 404


# ---------------------------------------------------------------------------
# Export and TAXII
# ---------------------------------------------------------------------------


class TestExport:
    async def test_csv(self, client, loaded) -> None:
        resp = await client.get("/api/v1/export/csv", params={"min_confidence": "0.8"}, headers=TENANT)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["X-Export-Count"] == "2"
        assert 'filename="tiace-export.csv"' in resp.headers["Content-Disposition"]
        assert resp.text.startswith("type,value,confidence,severity,source,timestamp,tags\n")

    async def test_unknown_format(self, client) -> None:
        resp = await client.get("/api/v1/export/pdf", headers=TENANT)
        assert resp.status_code == 422

    async def test_taxii(self, client, loaded) -> None:
        discovery = await client.get("/api/v1/taxii/discovery", headers=TENANT)
        assert discovery.headers["content-type"].startswith("application/taxii+json")
        assert discovery.json()["default"] == "/api/v1/taxii"
        root = (await client.get("/api/v1/taxii", headers=TENANT)).json()
        assert root["versions"] == [TAXII_MEDIA_TYPE]
        collections = (await client.get("/api/v1/taxii/collections", headers=TENANT)).json()
        collection_id = collections["collections"][0]["id"]

        url = f"/api/v1/taxii/collections/{collection_id}/objects"
        first = (await client.get(url, params={"limit": 2}, headers=TENANT)).json()
        assert len(first["objects"]) == 2
        assert first["more"] is True
        second = (await client.get(url, params={"limit": 2, "next": first["next"]}, headers=TENANT)).json()
        assert second["objects"][0]["id"] != first["objects"][0]["id"]

    async def test_taxii_errors(self, client) -> None:
        assert (await client.get("/api/v1/taxii/collections/other/objects", headers=TENANT)).status_code == 404
        resp = await client.get("/api/v1/taxii/collections/tiace-indicators/objects?next=abc", headers=TENANT)
        assert resp.status_code == 400

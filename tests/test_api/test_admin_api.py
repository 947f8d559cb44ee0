"""Operator API tests: agents, scan control, config, queues and maintenance."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from coordinator.services.config_service import SECRET_MASK
from tests.conftest import login, pair_agent

if TYPE_CHECKING:
    from httpx import AsyncClient


def _file(relative_path: str, quick_hash: str, **extra: Any) -> dict[str, Any]:
    return {
        "relative_path": relative_path,
        "filename": relative_path.rsplit("/", 1)[-1],
        "file_type": "psd",
        "file_size": 10,
        "modified_at": "2025-06-01T12:00:00Z",
        "quick_hash": quick_hash,
        **extra,
    }


@pytest.fixture
async def admin_headers(client: AsyncClient) -> dict[str, str]:
    return await login(client)


class TestAdminAuth:
    async def test_requires_token(self, client: AsyncClient) -> None:
        resp = await client.get("/api/admin/agents")
        assert resp.status_code == 401


class TestAgents:
    async def test_list_shows_heartbeat_state(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        agent_id, agent = await pair_agent(client, admin_headers, "bridge", "nas-1")
        await client.post(
            "/api/agent/heartbeat",
            json={"counters": {"files_seen": 4}, "last_error": "disk slow"},
            headers=agent,
        )

        resp = await client.get("/api/admin/agents", headers=admin_headers)
        assert resp.status_code == 200
        [summary] = resp.json()["agents"]
        assert summary["id"] == agent_id
        assert summary["agent_name"] == "nas-1"
        assert summary["online"] is True
        assert summary["last_counters"] == {"files_seen": 4}
        assert summary["last_error"] == "disk slow"
        assert summary["flags"]["force_stop"] is False
        assert "agent_key_hash" not in summary

    async def test_update_flag_is_delivered_once(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        agent_id, agent = await pair_agent(client, admin_headers)
        resp = await client.post(
            f"/api/admin/agents/{agent_id}/update", json={"action": "apply"}, headers=admin_headers
        )
        assert resp.json() == {"agents_updated": 1}

        first = await client.post("/api/agent/heartbeat", json={}, headers=agent)
        assert first.json()["commands"]["apply_update"] is True
        second = await client.post("/api/agent/heartbeat", json={}, headers=agent)
        assert second.json()["commands"]["apply_update"] is False

    async def test_update_unknown_agent(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        resp = await client.post(
            "/api/admin/agents/missing/update", json={"action": "check"}, headers=admin_headers
        )
        assert resp.status_code == 404

    async def test_revoked_key_stops_working(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        agent_id, agent = await pair_agent(client, admin_headers)
        resp = await client.delete(f"/api/admin/agents/{agent_id}", headers=admin_headers)
        assert resp.status_code == 204

        beat = await client.post("/api/agent/heartbeat", json={}, headers=agent)
        assert beat.status_code == 401


class TestScanControl:
    async def test_idle_status(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        resp = await client.get("/api/admin/scan", headers=admin_headers)
        data = resp.json()
        assert data["request"]["status"] == "idle"
        assert data["progress"] is None
        assert data["stale"] is False

    async def test_second_request_conflicts(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        first = await client.post("/api/admin/scan/request", headers=admin_headers)
        assert first.status_code == 201
        assert first.json()["status"] == "pending"

        second = await client.post("/api/admin/scan/request", headers=admin_headers)
        assert second.status_code == 409

    async def test_unknown_target(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        resp = await client.post(
            "/api/admin/scan/request",
            json={"target_agent_id": "missing"},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    async def test_reset_returns_to_idle(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        await client.post("/api/admin/scan/request", headers=admin_headers)
        resp = await client.post("/api/admin/scan/reset", headers=admin_headers)
        assert resp.json() == {"ok": True}

        status = (await client.get("/api/admin/scan", headers=admin_headers)).json()
        assert status["request"]["status"] == "idle"

    async def test_path_test_state(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        empty = (await client.get("/api/admin/path-test", headers=admin_headers)).json()
        assert empty == {"request": None, "result": None}

        created = await client.post(
            "/api/admin/path-test",
            json={"container_mount_root": "/mnt/nas", "scan_roots": ["/mnt/nas/Decor"]},
            headers=admin_headers,
        )
        state = (await client.get("/api/admin/path-test", headers=admin_headers)).json()
        assert state["request"]["request_id"] == created.json()["request_id"]
        assert state["request"]["status"] == "pending"
        assert state["request"]["scan_roots"] == ["/mnt/nas/Decor"]
        assert state["result"] is None


class TestConfig:
    async def test_defaults(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        resp = await client.get("/api/admin/config/POLLING_CONFIG", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["value"]["batch_size"] == 100

    async def test_spaces_secret_is_masked_but_delivered(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        resp = await client.put(
            "/api/admin/config/SPACES_CONFIG",
            json={"bucket_name": "assets", "access_key_id": "AKIA", "secret_access_key": "s3cr3t"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["value"]["secret_access_key"] == SECRET_MASK
        assert resp.json()["value"]["bucket_name"] == "assets"

        _, agent = await pair_agent(client, admin_headers)
        beat = await client.post("/api/agent/heartbeat", json={}, headers=agent)
        spaces = beat.json()["config"]["do_spaces"]
        assert spaces["bucket"] == "assets"
        assert spaces["secret_access_key"] == "s3cr3t"

    async def test_scanning_config_reaches_agents(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        await client.put(
            "/api/admin/config/SCANNING_CONFIG",
            json={"container_mount_root": "/mnt/nas", "roots": ["/mnt/nas/Decor"]},
            headers=admin_headers,
        )
        _, agent = await pair_agent(client, admin_headers)
        beat = await client.post("/api/agent/heartbeat", json={}, headers=agent)
        scanning = beat.json()["config"]["scanning"]
        assert scanning["container_mount_root"] == "/mnt/nas"
        assert scanning["roots"] == ["/mnt/nas/Decor"]


class TestQueues:
    async def test_processing_queue_maintenance(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        _, agent = await pair_agent(client, admin_headers)
        await client.post("/api/agent/ingest", json=_file("Decor/AB1/a.psd", "h1"), headers=agent)

        stats = (await client.get("/api/admin/jobs/stats", headers=admin_headers)).json()
        assert stats["counts"]["pending"] == 1

        claimed = (await client.post("/api/agent/jobs/claim", json={}, headers=agent)).json()
        await client.post(
            "/api/agent/jobs/complete",
            json={"job_id": claimed["jobs"][0]["job_id"], "success": False},
            headers=agent,
        )

        retried = await client.post("/api/admin/jobs/retry-failed", headers=admin_headers)
        assert retried.json() == {"count": 1}
        stale = await client.post("/api/admin/jobs/reset-stale", headers=admin_headers)
        assert stale.json() == {"count": 0}
        cleared = await client.post("/api/admin/jobs/clear-completed", headers=admin_headers)
        assert cleared.json() == {"count": 0}

    async def test_failed_render_requeue(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        _, bridge = await pair_agent(client, admin_headers)
        _, render = await pair_agent(client, admin_headers, "render")
        await client.post(
            "/api/agent/ingest",
            json=_file("Decor/AB1/a.psd", "h1", thumbnail_error="no PDF compatibility"),
            headers=bridge,
        )
        leased = (await client.post("/api/agent/renders/claim", json={}, headers=render)).json()
        job_id = leased["jobs"][0]["job_id"]
        await client.post(
            "/api/agent/renders/complete",
            json={"job_id": job_id, "success": False, "error_message": "bad file"},
            headers=render,
        )

        stats = (await client.get("/api/admin/renders/stats", headers=admin_headers)).json()
        assert stats["counts"]["failed"] == 1
        assert "processing" not in stats["counts"]

        requeued = await client.post(
            f"/api/admin/renders/{job_id}/requeue", headers=admin_headers
        )
        assert requeued.json()["status"] == "pending"

        cleared = await client.post("/api/admin/renders/clear-failed", headers=admin_headers)
        assert cleared.json() == {"count": 0}

    async def test_requeue_unknown(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        resp = await client.post("/api/admin/renders/missing/requeue", headers=admin_headers)
        assert resp.status_code == 404


class TestMaintenance:
    async def _ingest_two(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        _, agent = await pair_agent(client, admin_headers)
        for path, quick_hash in (("Decor/AB1/a.psd", "h1"), ("Decor/AB1/b.psd", "h2")):
            resp = await client.post(
                "/api/agent/ingest", json=_file(path, quick_hash), headers=agent
            )
            assert resp.json()["action"] == "created"

    async def test_purge_before_cutoff(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        await self._ingest_two(client, admin_headers)
        resp = await client.post(
            "/api/admin/maintenance/purge",
            json={"cutoff_date": "2030-01-01"},
            headers=admin_headers,
        )
        assert resp.json() == {"processed": 2, "next_offset": 0, "done": True}

        again = await client.post(
            "/api/admin/maintenance/purge",
            json={"cutoff_date": "2030-01-01"},
            headers=admin_headers,
        )
        assert again.json() == {"processed": 0, "next_offset": 0, "done": True}

    async def test_purge_requires_cutoff(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        resp = await client.post("/api/admin/maintenance/purge", json={}, headers=admin_headers)
        assert resp.status_code == 422

    async def test_reclassify_pages(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        await self._ingest_two(client, admin_headers)
        first = await client.post(
            "/api/admin/maintenance/reclassify",
            json={"offset": 0, "limit": 1},
            headers=admin_headers,
        )
        assert first.json() == {"processed": 1, "next_offset": 1, "done": False}

        last = await client.post(
            "/api/admin/maintenance/reclassify",
            json={"offset": 2, "limit": 1},
            headers=admin_headers,
        )
        assert last.json() == {"processed": 0, "next_offset": 2, "done": True}

    async def test_rebuild_style_groups(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        await self._ingest_two(client, admin_headers)
        resp = await client.post(
            "/api/admin/maintenance/rebuild-style-groups",
            json={"offset": 0},
            headers=admin_headers,
        )
        assert resp.json() == {"processed": 2, "next_offset": 2, "done": True}

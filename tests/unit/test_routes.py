"""Integration tests for API routes (routes.py + main.py)."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient

from diskswap import config
from diskswap.api.models import StartCloneRequest
from diskswap.errors import JobLockedError, PreflightError, SupervisorError
from diskswap.models.status import StageName, StageStatus
from diskswap.models.supervisor import ImageCacheInfo, SupervisorBackup, SystemInfo
from diskswap.services.pipeline import get_orchestrator


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------

def _system_info():
    return SystemInfo(
        machine="raspberrypi4-64",
        board_slug="rpi4-64",
        os_version="14.1",
        ip_address="192.168.1.20",
        free_space_bytes=10 * 1024**3,
        free_space_human="10.0 GB",
    )


# -----------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------

@pytest.fixture
def fake_orchestrator(job_store, sample_device):
    orch = MagicMock()
    orch.job_store = job_store
    orch.list_devices = AsyncMock(return_value=[sample_device])
    orch.supervisor.get_system_info = AsyncMock(return_value=_system_info())
    orch.supervisor.list_backups = AsyncMock(return_value=[
        SupervisorBackup(slug="a1b2c3d4", name="Nightly", date="2026-10-18", type="full", size=120.5),
    ])
    orch.images.cache_info = MagicMock(return_value=ImageCacheInfo(cached=False))
    orch.run = AsyncMock()
    orch.cancel = MagicMock(return_value=True)
    orch.signal_sandbox_done = MagicMock(return_value=True)
    orch.shutdown = AsyncMock()
    return orch


@pytest.fixture
def client(fake_orchestrator, tmp_path):
    """TestClient with the lifespan's filesystem side effects redirected."""
    from diskswap.main import app

    app.dependency_overrides[get_orchestrator] = lambda: fake_orchestrator
    with patch("diskswap.main.setup_logger") as mock_log, \
         patch.object(config, "DATA_DIR", tmp_path), \
         patch.object(config, "IMAGE_DIR", tmp_path / "images"), \
         patch("diskswap.main.get_orchestrator", return_value=fake_orchestrator):
        mock_log.return_value = MagicMock()
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


# -----------------------------------------------------------------------
# Read-only endpoints
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestInfoRoutes:
    """GET endpoints backing the device/backup pickers."""

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_repeated_slashes_normalised(self, client):
        assert client.get("/api//health").status_code == 200

    def test_devices(self, client):
        resp = client.get("/api/devices")

        assert resp.status_code == 200
        assert resp.json()["devices"][0]["path"] == "/dev/sdb"

    def test_devices_error(self, client, fake_orchestrator):
        fake_orchestrator.list_devices.side_effect = RuntimeError("lsblk missing")

        resp = client.get("/api/devices")

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to list devices", "detail": "lsblk missing"}

    def test_system_info(self, client):
        body = client.get("/api/system-info").json()
        assert body["board_slug"] == "rpi4-64"
        assert body["ip_address"] == "192.168.1.20"

    def test_backups(self, client):
        body = client.get("/api/backups").json()
        assert body["backups"][0]["slug"] == "a1b2c3d4"

    def test_backups_supervisor_down(self, client, fake_orchestrator):
        fake_orchestrator.supervisor.list_backups.side_effect = SupervisorError("unreachable")
        assert client.get("/api/backups").status_code == 500

    def test_image_cache(self, client, fake_orchestrator):
        fake_orchestrator.images.cache_info.return_value = ImageCacheInfo(
            cached=True, version="14.1", board="rpi4-64", size_bytes=400 * 1024**2, size_human="400 MB"
        )

        body = client.get("/api/image-cache").json()

        fake_orchestrator.images.cache_info.assert_called_once_with("rpi4-64", "14.1")
        assert body["cached"] is True
        assert body["size_human"] == "400 MB"

    def test_image_cache_not_cached_is_compact(self, client):
        assert client.get("/api/image-cache").json() == {"cached": False}

    def test_delete_image_cache(self, client, fake_orchestrator):
        assert client.delete("/api/image-cache").json() == {"ok": True}
        fake_orchestrator.images.discard.assert_called_once_with("rpi4-64", "14.1")


# -----------------------------------------------------------------------
# Clone control
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestCloneRoutes:
    """POST /api/start-clone and friends."""

    def test_start_clone(self, client, fake_orchestrator, job_store, sample_device):
        fake_orchestrator.run.return_value = job_store.create_job(sample_device)

        resp = client.post("/api/start-clone", json={"device": "/dev/sdb", "backup_slug": "a1b2c3d4"})

        assert resp.status_code == 200
        assert resp.json() == {"job_id": job_store.get_current_job().id}
        fake_orchestrator.run.assert_awaited_once_with(
            "/dev/sdb", backup_slug="a1b2c3d4", skip_flash=False, skip_sandbox=False
        )

    def test_start_clone_empty_slug_creates_new_backup(self, client, fake_orchestrator, job_store, sample_device):
        fake_orchestrator.run.return_value = job_store.create_job(sample_device)

        resp = client.post("/api/start-clone", json={"device": "/dev/sdb", "backup_slug": ""})

        assert resp.status_code == 200
        fake_orchestrator.run.assert_awaited_once_with(
            "/dev/sdb", backup_slug=None, skip_flash=False, skip_sandbox=False
        )

    def test_backup_selection(self):
        existing = StartCloneRequest(device="/dev/sdb", backup_slug="a1b2c3d4").backup_selection()
        new = StartCloneRequest(device="/dev/sdb").backup_selection()

        assert (existing.type, existing.slug) == ("existing", "a1b2c3d4")
        assert (new.type, new.slug) == ("new", None)

    def test_start_clone_missing_device(self, client, fake_orchestrator):
        resp = client.post("/api/start-clone", json={})

        assert resp.status_code == 422
        fake_orchestrator.run.assert_not_called()

    def test_start_clone_locked(self, client, fake_orchestrator):
        fake_orchestrator.run.side_effect = JobLockedError("A clone operation is already in progress.")

        resp = client.post("/api/start-clone", json={"device": "/dev/sdb"})

        assert resp.status_code == 409
        assert "already in progress" in resp.json()["error"]

    def test_start_clone_preflight_failure(self, client, fake_orchestrator):
        fake_orchestrator.run.side_effect = PreflightError("Not enough disk space for image download.")

        resp = client.post("/api/start-clone", json={"device": "/dev/sdb"})

        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Not enough disk space")

    def test_cancel_clone(self, client, fake_orchestrator):
        assert client.post("/api/cancel-clone").json() == {"ok": True}
        fake_orchestrator.cancel.assert_called_once()

    def test_sandbox_done(self, client, fake_orchestrator):
        assert client.post("/api/sandbox-done").json() == {"ok": True}
        fake_orchestrator.signal_sandbox_done.assert_called_once()

    def test_current_job_none(self, client):
        resp = client.get("/api/jobs/current")
        assert resp.status_code == 404
        assert resp.json() == {"error": "No active job"}

    def test_current_job(self, client, job_store, sample_device):
        job = job_store.create_job(sample_device)

        body = client.get("/api/jobs/current").json()

        assert body["id"] == job.id
        assert body["status"] == "in_progress"
        assert body["stages"]["backup"]["status"] == "pending"

    def test_dismiss_finished_job(self, client, job_store, sample_device):
        job_store.create_job(sample_device)
        job_store.complete_job()

        assert client.delete("/api/jobs/current").json() == {"ok": True}
        assert job_store.get_current_job() is None

    def test_dismiss_running_job_rejected(self, client, job_store, sample_device):
        job_store.create_job(sample_device)

        assert client.delete("/api/jobs/current").status_code == 409
        assert job_store.get_current_job() is not None


# -----------------------------------------------------------------------
# WebSocket /ws/progress
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestProgressSocket:
    """Snapshot replay for (re)connecting clients."""

    def test_snapshot_then_done(self, client, job_store, sample_device):
        job_store.create_job(sample_device, include_sandbox=False)
        for stage in (StageName.BACKUP, StageName.DOWNLOAD, StageName.FLASH, StageName.INJECT):
            job_store.update_stage(stage, StageStatus.COMPLETED, 100)
        job_store.set_backup_name("Nightly")
        job_store.complete_job()

        with client.websocket_connect("/ws/progress") as ws:
            messages = [ws.receive_json() for _ in range(5)]

        assert [m["type"] for m in messages] == ["stage_update"] * 4 + ["done"]
        assert messages[0]["stage"] == "backup"
        assert messages[-1]["backup_name"] == "Nightly"

    def test_snapshot_failed_job(self, client, job_store, sample_device):
        job_store.create_job(sample_device, include_sandbox=False)
        job_store.update_stage(StageName.BACKUP, StageStatus.IN_PROGRESS, 10)
        job_store.fail_job(StageName.BACKUP, "Backup failed: Disk full")

        with client.websocket_connect("/ws/progress") as ws:
            messages = [ws.receive_json() for _ in range(5)]

        assert messages[-1] == {"type": "error", "stage": "backup", "message": "Backup failed: Disk full"}


# -----------------------------------------------------------------------
# lifespan
# -----------------------------------------------------------------------

@pytest.mark.unit
class TestLifespan:
    """Startup/shutdown hooks."""

    def test_startup_rehydrates_and_shutdown_stops_pipeline(self, fake_orchestrator, tmp_path):
        from diskswap.main import app

        store = MagicMock()
        store.rehydrate.return_value = None
        with patch("diskswap.main.setup_logger", return_value=MagicMock()), \
             patch.object(config, "DATA_DIR", tmp_path / "data"), \
             patch.object(config, "IMAGE_DIR", tmp_path / "data"), \
             patch("diskswap.main.JobStore", return_value=store), \
             patch("diskswap.main.get_orchestrator", return_value=fake_orchestrator):
            with TestClient(app) as c:
                assert c.get("/api/health").status_code == 200
                store.rehydrate.assert_called_once()
                assert (tmp_path / "data").is_dir()

        fake_orchestrator.shutdown.assert_awaited_once()

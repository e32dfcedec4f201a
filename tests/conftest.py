"""Global pytest fixtures and configuration."""

import io
import json
import sys
import tarfile
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from diskswap.models.device import Device  # noqa: E402
from diskswap.services import pipeline  # noqa: E402
from diskswap.services.job_store import JobStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset process-wide singletons before and after each test."""
    JobStore._instance = None
    pipeline._orchestrator = None
    yield
    JobStore._instance = None
    pipeline._orchestrator = None


@pytest.fixture
def job_store(tmp_path):
    """JobStore persisting to a temporary state file."""
    store = JobStore()
    store.state_file_path = tmp_path / "clone-job.json"
    return store


@pytest.fixture
def sample_device():
    """A 32 GB USB stick as reported by device discovery."""
    return Device(
        name="sdb",
        path="/dev/sdb",
        size=32 * 1024**3,
        size_human="32 GB",
        vendor="SanDisk",
        model="Ultra",
        tran="usb",
        serial="4C530001",
        has_os=False,
    )


@pytest.fixture
def make_backup_archive(tmp_path):
    """Factory writing a backup tarball with a ``backup.json`` member."""

    def _make(slug: str, name: str = None, filename: str = None, directory: Path = None) -> Path:
        directory = directory or tmp_path / "backup"
        directory.mkdir(parents=True, exist_ok=True)
        archive = directory / (filename or f"{slug}.tar")
        metadata = json.dumps({"slug": slug, "name": name or f"Backup {slug}"}).encode()
        with tarfile.open(archive, "w") as tar:
            info = tarfile.TarInfo("./backup.json")
            info.size = len(metadata)
            tar.addfile(info, io.BytesIO(metadata))
            payload = b"homeassistant" * 64
            info = tarfile.TarInfo("./homeassistant.tar.gz")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
        return archive

    return _make

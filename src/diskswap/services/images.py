"""OS image store: release URLs, cached downloads and checksum verification."""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import httpx

from diskswap import config
from diskswap.errors import ChecksumMismatchError, CloneCancelledError, ImageError
from diskswap.models.supervisor import ImageCacheInfo
from diskswap.utils.cancellation import CancelToken
from diskswap.utils.formatting import format_bytes
from diskswap.utils.progress import ThroughputMeter
from diskswap.utils.verification import compute_sha256, parse_checksum_file

ProgressCallback = Callable[[int, Optional[float], Optional[float]], None]


def image_name(board: str, version: str) -> str:
    return f"haos_{board}-{version}.img.xz"


def download_url(board: str, version: str) -> str:
    return f"{config.RELEASES_BASE_URL}/{version}/{image_name(board, version)}"


def checksum_url(image_url: str) -> str:
    return f"{image_url}.sha256"


class ImageStore:
    """Downloads OS images into ``image_dir`` and keeps verified copies as a cache.

    A cached image is reused unless its checksum is confirmed to mismatch;
    a missing checksum file does not invalidate it.
    """

    def __init__(self, image_dir: Path = config.IMAGE_DIR, timeout: float = 30.0):
        self.logger = logging.getLogger("diskswap.images")
        self.image_dir = Path(image_dir)
        self.timeout = timeout
        self.chunk_size = 256 * 1024

    def image_path(self, board: str, version: str) -> Path:
        return self.image_dir / image_name(board, version)

    async def download(
        self,
        url: str,
        dest_path: Path,
        on_progress: ProgressCallback,
        token: Optional[CancelToken] = None,
    ) -> Path:
        """Stream ``url`` to ``dest_path`` with percent/speed/ETA reporting.

        The body is written to a ``.part`` sibling first and only renamed
        into place once complete, so a partial file never looks cached.

        Raises:
            ImageError: HTTP failure or truncated body
            CloneCancelledError: ``token`` fired mid-stream (partial file removed)
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        part_path = dest_path.with_name(dest_path.name + ".part")
        self.logger.info(f"Downloading {url} -> {dest_path}")

        try:
            await self._stream_to_file(url, part_path, on_progress, token)
        except BaseException:
            part_path.unlink(missing_ok=True)
            raise

        part_path.replace(dest_path)
        self.logger.info(f"Download complete: {dest_path} ({dest_path.stat().st_size} bytes)")
        return dest_path

    async def _stream_to_file(
        self,
        url: str,
        part_path: Path,
        on_progress: ProgressCallback,
        token: Optional[CancelToken],
    ) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise ImageError(f"Download failed: HTTP {response.status_code} from {url}")

                total = int(response.headers.get("Content-Length") or 0)
                meter = ThroughputMeter(total)
                received = 0
                last_percent = -1

                async with aiofiles.open(part_path, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        if token is not None and token.cancelled:
                            raise CloneCancelledError()
                        await f.write(chunk)
                        received += len(chunk)

                        sampled = meter.update(received)
                        percent = meter.percent
                        if total and (sampled or percent != last_percent):
                            last_percent = percent
                            on_progress(min(percent, 99), meter.speed or None, meter.eta)

        if total and received != total:
            raise ImageError(f"Download truncated: got {received} of {total} bytes")

    async def verify_checksum(self, path: Path, sha256_url: str) -> bool:
        """Compare ``path`` against the detached SHA256 at ``sha256_url``.

        Returns:
            True if the checksum matches, False if no checksum is published (404)

        Raises:
            ChecksumMismatchError: Hash differs (the local file is deleted)
            ImageError: Checksum could not be fetched or parsed
            httpx.HTTPError: Network failure
        """
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            response = await client.get(sha256_url)

        if response.status_code == 404:
            self.logger.info("No checksum file available, skipping verification")
            return False
        if response.status_code >= 400:
            raise ImageError(f"Failed to download checksum: HTTP {response.status_code}")

        try:
            expected = parse_checksum_file(response.text)
        except ValueError as e:
            raise ImageError(f"Unreadable checksum file: {e}") from e

        actual = await asyncio.to_thread(compute_sha256, Path(path))
        if actual != expected:
            self.logger.error(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
            Path(path).unlink(missing_ok=True)
            raise ChecksumMismatchError(f"Checksum mismatch: expected {expected}, got {actual}")

        self.logger.info(f"Checksum verified for {Path(path).name}")
        return True

    async def is_cache_valid(self, path: Path, sha256_url: str) -> bool:
        """True if ``path`` exists and is not confirmed corrupt.

        An unpublished or unreachable checksum counts as a cache hit; only a
        mismatch (which also evicts the file) counts as a miss.
        """
        if not Path(path).exists():
            return False
        try:
            await self.verify_checksum(path, sha256_url)
        except ChecksumMismatchError:
            return False
        except (ImageError, httpx.HTTPError) as e:
            self.logger.warning(f"Checksum unavailable for cached {path} ({e}), reusing it")
        return True

    def cleanup(self, path: Path) -> None:
        """Delete ``path``, ignoring a file that is already gone."""
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning(f"Could not delete {path}: {e}")

    def cache_info(self, board: str, version: str) -> ImageCacheInfo:
        path = self.image_path(board, version)
        if not path.exists():
            return ImageCacheInfo(cached=False)
        size = path.stat().st_size
        return ImageCacheInfo(
            cached=True,
            version=version,
            board=board,
            size_bytes=size,
            size_human=format_bytes(size),
        )

    def discard(self, board: str, version: str) -> None:
        path = self.image_path(board, version)
        self.logger.info(f"Discarding cached image {path}")
        self.cleanup(path)

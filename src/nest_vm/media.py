"""Install-media catalog under ``Settings.media_root``.

Media are referenced by plain file name; resolve() refuses anything that would
escape the media root. ensure_driver_iso() fetches the paravirtual driver ISO
once, best-effort: a failed download only means guests boot without it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import aiofiles.os
import requests
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from nest_vm import constants
from nest_vm._logging import get_logger
from nest_vm.exceptions import MediaError
from nest_vm.models import MacOsMediaCheck

if TYPE_CHECKING:
    from pathlib import Path

    from nest_vm.settings import Settings

logger = get_logger(__name__)

_DOWNLOAD_TIMEOUT = (10, 60)  # (connect, read) seconds


def _download(url: str, dest: Path) -> int:
    """Stream ``url`` into ``dest`` via a temp file. Returns bytes written."""
    tmp = dest.with_name(f".{dest.name}.part")
    written = 0
    try:
        with requests.get(url, stream=True, timeout=_DOWNLOAD_TIMEOUT, allow_redirects=True) as resp:
            resp.raise_for_status()
            with tmp.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=constants.DRIVER_DOWNLOAD_CHUNK_BYTES):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        tmp.replace(dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return written


class MediaCatalog:
    """Lists, resolves, and removes install media."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._download_lock = asyncio.Lock()

    @property
    def root(self) -> Path:
        return self._settings.media_root

    async def ensure_root(self) -> None:
        await aiofiles.os.makedirs(self.root, exist_ok=True)

    async def list_media(self) -> list[str]:
        """File names in the media root, sorted. Creates the root if missing."""
        await self.ensure_root()
        entries = await aiofiles.os.scandir(self.root)
        with entries:
            return sorted(entry.name for entry in entries if entry.is_file() and not entry.name.startswith("."))

    def resolve(self, name: str) -> Path:
        """Absolute path of media ``name``.

        Raises:
            MediaError: Name contains a path separator or escapes the media root
        """
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise MediaError(f"Invalid media name: {name!r}", context={"media_name": name})
        path = self.root / name
        if path.resolve().parent != self.root.resolve():
            raise MediaError(f"Media name escapes the media root: {name!r}", context={"media_name": name})
        return path

    async def exists(self, name: str) -> bool:
        return await aiofiles.os.path.isfile(self.resolve(name))

    async def delete(self, name: str) -> None:
        """Remove media ``name``.

        Raises:
            MediaError: Invalid name or no such file
        """
        path = self.resolve(name)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError as e:
            raise MediaError(f"Media not found: {name}", context={"media_name": name}) from e
        logger.info("Media deleted", extra={"media_name": name})

    async def check_macos_media(self) -> MacOsMediaCheck:
        """Which macOS support files are missing from the media root."""
        missing = [name for name in constants.MACOS_REQUIRED_MEDIA if not await self.exists(name)]
        return MacOsMediaCheck(ready=not missing, missing=missing)

    async def ensure_driver_iso(self) -> bool:
        """Download the paravirtual driver ISO if absent.

        Never raises. Returns True if the ISO is present afterwards.
        """
        dest = self._settings.driver_iso_path
        if await aiofiles.os.path.exists(dest):
            return True
        if not self._settings.auto_download_drivers:
            logger.debug("Driver ISO absent and auto-download disabled", extra={"path": str(dest)})
            return False

        async with self._download_lock:
            if await aiofiles.os.path.exists(dest):
                return True
            url = self._settings.driver_iso_url
            logger.info("Downloading driver ISO", extra={"url": url, "path": str(dest)})
            try:
                await self.ensure_root()
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(constants.DRIVER_DOWNLOAD_MAX_ATTEMPTS),
                    wait=wait_random_exponential(
                        min=constants.DRIVER_DOWNLOAD_RETRY_MIN_SECONDS,
                        max=constants.DRIVER_DOWNLOAD_RETRY_MAX_SECONDS,
                    ),
                    retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
                    before_sleep=before_sleep_log(logger, logging.WARNING),
                    reraise=True,
                ):
                    with attempt:
                        size = await asyncio.to_thread(_download, url, dest)
            except (requests.RequestException, OSError) as e:
                logger.warning(
                    "Driver ISO download failed, continuing without it",
                    extra={"url": url, "error": str(e), "error_type": type(e).__name__},
                )
                return False

            logger.info("Driver ISO downloaded", extra={"path": str(dest), "bytes": size})
            return True

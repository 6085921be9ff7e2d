"""
Artifact Store - transient on-disk home for generated PDFs.

Files are written atomically into the serving directory, exposed under a
predictable public URL, and removed either after the serving window or
immediately when the upload that needed them failed.
"""

import asyncio
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .config import ServiceSettings
from .errors import PersistFailure
from .naming import build_public_url, generate_report_filename
from .scheduler import DeferredScheduler, ScheduledTask

logger = logging.getLogger(__name__)


@dataclass
class Artifact:
    """A persisted PDF and where it can be fetched from."""

    filename: str
    path: Path
    url: str
    size_bytes: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delete_at: Optional[datetime] = None
    deletion: Optional[ScheduledTask] = field(default=None, repr=False)

    def exists(self) -> bool:
        return self.path.exists()

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "url": self.url,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "delete_at": self.delete_at.isoformat() if self.delete_at else None,
        }


class ArtifactStore:
    """
    Owns the serving directory and every Artifact written into it.

    Args:
        settings: Service settings (serving dir, base URL, serving window)
        scheduler: Scheduler used for deferred deletions
    """

    def __init__(self, settings: ServiceSettings, scheduler: DeferredScheduler):
        self.directory = Path(settings.serving_dir).resolve()
        self.public_base_url = settings.public_base_url
        self.serving_path = settings.serving_path
        self.serving_window = settings.serving_window_seconds
        self._scheduler = scheduler

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    async def persist(self, pdf_bytes: bytes, record_id: str, label: Optional[str] = None) -> Artifact:
        """
        Write PDF bytes under a fresh unique name.

        Raises:
            PersistFailure: empty payload or any filesystem error
        """
        if not pdf_bytes:
            raise PersistFailure("Refusing to persist an empty PDF")

        filename = generate_report_filename(record_id, label)
        path = self.directory / filename

        # The worker thread cannot be interrupted, so a cancelled caller
        # leaves a callback behind that removes the file once it lands.
        write = asyncio.ensure_future(asyncio.to_thread(self._write_atomic, path, pdf_bytes))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            write.add_done_callback(lambda _f: self._discard_late_write(path))
            raise
        except OSError as e:
            raise PersistFailure(f"Failed to write {filename}: {e}", cause=e) from e

        artifact = Artifact(
            filename=filename,
            path=path,
            url=build_public_url(self.public_base_url, self.serving_path, filename),
            size_bytes=len(pdf_bytes),
        )
        logger.info(f"File saved: {filename} ({artifact.size_bytes} bytes)")
        return artifact

    def _write_atomic(self, path: Path, data: bytes) -> None:
        """Write to a temp file in the same directory, then rename into place."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _discard_late_write(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(f"Cleanup error for {path.name}: {e}")
            return
        logger.info(f"Cleanup success: Deleted {path.name} (write finished after cancellation)")

    def schedule_deletion(self, artifact: Artifact, delay: Optional[float] = None) -> ScheduledTask:
        """
        Arm a one-shot deletion after ``delay`` seconds (default: serving window).

        Re-arming replaces any deletion already scheduled for the artifact.
        """
        delay = self.serving_window if delay is None else delay
        if artifact.deletion is not None:
            artifact.deletion.cancel()

        artifact.delete_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        artifact.deletion = self._scheduler.schedule(
            delay,
            lambda: self.delete_now(artifact),
            name=f"delete:{artifact.filename}",
        )
        logger.info(f"Cleanup scheduled: {artifact.filename} in {delay:g}s")
        return artifact.deletion

    async def delete_now(self, artifact: Artifact) -> bool:
        """
        Remove the artifact file immediately.

        Never raises. Returns True if a file was removed, False if it was
        already gone or could not be removed.
        """
        if artifact.deletion is not None and not artifact.deletion.done:
            artifact.deletion.cancel()

        try:
            await asyncio.to_thread(artifact.path.unlink)
        except FileNotFoundError:
            logger.info(f"Cleanup skip: File {artifact.filename} already removed")
            return False
        except OSError as e:
            logger.error(f"Cleanup error for {artifact.filename}: {e}")
            return False

        logger.info(f"Cleanup success: Deleted {artifact.filename}")
        return True

    async def sweep_stale(self, max_age: Optional[float] = None) -> int:
        """
        Delete leftover files older than ``max_age`` seconds.

        Runs at startup so artifacts orphaned by a previous crash do not
        accumulate. Returns the number of files removed.
        """
        max_age = self.serving_window if max_age is None else max_age
        return await asyncio.to_thread(self._sweep, max_age)

    def _sweep(self, max_age: float) -> int:
        if not self.directory.is_dir():
            return 0

        cutoff = time.time() - max_age
        removed = 0
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            if not (entry.suffix == ".pdf" or entry.name.startswith(".tmp-")):
                continue
            try:
                if entry.stat().st_mtime <= cutoff:
                    entry.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Sweep could not remove {entry.name}: {e}")

        if removed:
            logger.info(f"Swept {removed} stale artifact(s) from {self.directory}")
        return removed

"""
Per-job working directories and their retention.

Each request that produces artifacts gets its own directory under the
storage root, named after a fresh job id. Nothing closes a job explicitly:
a background sweep removes job directories whose modification time is
older than the retention window.

The sweep takes no lock against request handlers. The retention window must
therefore be far longer than any single request (2 hours against a
30-minute interval by default); a request whose directory is swept while it
is still running fails with a filesystem error.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Event, Thread
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .errors import ArtifactNotFoundError, PathForbiddenError, WorkspaceError
from .utils import ensure_directory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Job:
    """
    A job directory owned by a single request.

    Attributes:
        id: Opaque unique token, also the directory name
        root: Absolute path of the job directory
        created_at: Creation time (UTC), informational only
    """

    id: str
    root: Path
    created_at: datetime

    @property
    def input_path(self) -> Path:
        return self.root / "input.pdf"

    @property
    def pages_dir(self) -> Path:
        return self.root / "pages"

    @property
    def previews_dir(self) -> Path:
        return self.root / "previews"

    def path(self, name: str) -> Path:
        return self.root / name


@dataclass
class SweepReport:
    cutoff: datetime
    removed: List[str] = field(default_factory=list)
    kept: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


class WorkspaceManager:
    """
    Creates job directories under a fixed storage root and reclaims old ones.

    Attributes:
        root: Absolute storage root shared by all jobs
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root).resolve())

    def create_job(self) -> Job:
        """
        Create a fresh, uniquely named job directory.

        Raises:
            WorkspaceError: If the directory cannot be created
        """
        job_id = str(uuid4())
        job_root = self.root / job_id
        try:
            job_root.mkdir(parents=False, exist_ok=False)
        except OSError as exc:
            logger.error(f"Failed to create job directory {job_root}: {exc}")
            raise WorkspaceError("failed to create job") from exc
        logger.debug(f"Created job {job_id}")
        return Job(id=job_id, root=job_root, created_at=datetime.now(timezone.utc))

    def open_job(self, job_id: str) -> Job:
        """
        Look up an existing job by id.

        Raises:
            PathForbiddenError: If ``job_id`` is not a single plain path segment
            ArtifactNotFoundError: If the job directory does not exist
        """
        job_root = self.job_dir(job_id)
        if not job_root.is_dir():
            raise ArtifactNotFoundError(f"job {job_id} not found")
        created = datetime.fromtimestamp(job_root.stat().st_mtime, tz=timezone.utc)
        return Job(id=job_id, root=job_root, created_at=created)

    def job_dir(self, job_id: str) -> Path:
        if not job_id or job_id in {".", ".."} or "/" in job_id or "\\" in job_id:
            raise PathForbiddenError(f"invalid job id {job_id!r}")
        return self.root / job_id

    def sweep(self, max_age: timedelta, now: Optional[datetime] = None) -> SweepReport:
        """
        Delete every job directory last modified before ``now - max_age``.

        Args:
            max_age: Retention window, must be positive
            now: Reference time (default: current time)

        Returns:
            A report of removed and kept job ids

        Note:
            Failures on a single directory are logged and recorded in the
            report; the sweep carries on with the remaining entries.
        """
        if max_age <= timedelta(0):
            raise ValueError("max_age must be positive")

        reference = now or datetime.now(timezone.utc)
        cutoff = reference - max_age
        report = SweepReport(cutoff=cutoff)

        try:
            entries = list(self.root.iterdir())
        except OSError as exc:
            logger.error(f"Sweep could not list {self.root}: {exc}")
            report.errors[str(self.root)] = str(exc)
            return report

        for entry in entries:
            try:
                if not entry.is_dir() or entry.is_symlink():
                    continue
                modified = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
                if modified < cutoff:
                    shutil.rmtree(entry)
                    report.removed.append(entry.name)
                else:
                    report.kept += 1
            except OSError as exc:
                logger.warning(f"Sweep failed for {entry}: {exc}")
                report.errors[entry.name] = str(exc)

        if report.removed:
            logger.info(f"Sweep removed {len(report.removed)} job(s) older than {cutoff.isoformat()}")
        return report


class RetentionSweeper:
    """
    Background thread running ``WorkspaceManager.sweep`` on a fixed interval.

    The first sweep happens one interval after ``start``. ``on_removed`` is
    called with the ids removed by each sweep that removed anything.
    """

    def __init__(
        self,
        manager: WorkspaceManager,
        retention: timedelta,
        interval: timedelta,
        on_removed: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        self.manager = manager
        self.retention = retention
        self.interval = interval
        self._on_removed = on_removed
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            f"Retention sweeper started: every {self.interval.total_seconds():.0f}s, "
            f"removing jobs older than {self.retention.total_seconds():.0f}s"
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_once(self) -> SweepReport:
        report = self.manager.sweep(self.retention)
        if report.removed and self._on_removed is not None:
            self._on_removed(report.removed)
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.interval.total_seconds()):
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Retention sweep failed")

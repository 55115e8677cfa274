"""
In-memory state of page-level artifacts.

Artifacts are still stored as plain files; this registry records what the
service is doing with them so that two requests never render the same
artifact at the same time. Records are keyed by ``(job_id, role)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from threading import Condition
from typing import Dict, Iterable, Optional, Tuple

from .models import ArtifactState


@dataclass(frozen=True)
class ArtifactRecord:
    state: ArtifactState = ArtifactState.NOT_STARTED
    path: Optional[Path] = None
    reason: Optional[str] = None


NOT_STARTED = ArtifactRecord()


class ArtifactRegistry:
    """
    Thread-safe map of artifact records.

    ``begin`` is the only way into ``IN_PROGRESS``; it either hands ownership
    to the caller or blocks until the current owner finishes.
    """

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], ArtifactRecord] = {}
        self._condition = Condition()

    def get(self, job_id: str, role: str) -> ArtifactRecord:
        with self._condition:
            return self._records.get((job_id, role), NOT_STARTED)

    def begin(self, job_id: str, role: str, timeout: Optional[float] = None) -> Tuple[bool, ArtifactRecord]:
        """
        Claim production of an artifact.

        Returns:
            ``(True, record)`` when the caller now owns production, or
            ``(False, record)`` with the record left by the owner that was
            in progress when the call started

        Note:
            A record already DONE or FAILED is claimed again: the caller is a
            new request and decides itself whether the file is usable.
        """
        key = (job_id, role)
        with self._condition:
            record = self._records.get(key, NOT_STARTED)
            if record.state != ArtifactState.IN_PROGRESS:
                self._records[key] = ArtifactRecord(ArtifactState.IN_PROGRESS)
                return True, self._records[key]

            finished = self._condition.wait_for(
                lambda: self._records.get(key, NOT_STARTED).state != ArtifactState.IN_PROGRESS,
                timeout=timeout,
            )
            record = self._records.get(key, NOT_STARTED)
            if not finished:
                return False, ArtifactRecord(ArtifactState.FAILED, reason="timed out waiting for concurrent render")
            return False, record

    def complete(self, job_id: str, role: str, path: Path) -> None:
        self._set(job_id, role, ArtifactRecord(ArtifactState.DONE, path=path))

    def fail(self, job_id: str, role: str, reason: str) -> None:
        self._set(job_id, role, ArtifactRecord(ArtifactState.FAILED, reason=reason))

    def reset(self, job_id: str, role: str) -> None:
        with self._condition:
            self._records.pop((job_id, role), None)
            self._condition.notify_all()

    def forget_jobs(self, job_ids: Iterable[str]) -> None:
        doomed = set(job_ids)
        if not doomed:
            return
        with self._condition:
            for key in [key for key in self._records if key[0] in doomed]:
                del self._records[key]
            self._condition.notify_all()

    def _set(self, job_id: str, role: str, record: ArtifactRecord) -> None:
        with self._condition:
            self._records[(job_id, role)] = record
            self._condition.notify_all()

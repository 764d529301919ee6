"""Bounded in-memory result store.

Completed jobs are retrievable by job id; deterministic outcomes are also
indexed by request fingerprint so identical submissions can reuse them.

Entries are evicted least-recently-used first. Jobs that are still running
hold a reservation that pins their slot: they count towards capacity but are
never evicted, and their fingerprint is not served until put() completes.

All operations take a threading.Lock, so readers never observe a half
updated index even when the store is shared across event loops.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass

from compilerhub import constants
from compilerhub._logging import get_logger
from compilerhub.exceptions import CacheCorruptionError, JobNotFoundError
from compilerhub.models import CompileResult, VisualizationGraph

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheStats:
    entries: int
    pinned: int
    hits: int
    misses: int
    evictions: int


class ResultCache:
    """Fingerprint-indexed LRU of CompileResults keyed by job id."""

    def __init__(self, max_entries: int = constants.DEFAULT_CACHE_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, CompileResult] = OrderedDict()
        self._by_fingerprint: dict[str, str] = {}
        self._pinned: dict[str, str | None] = {}  # job_id -> fingerprint
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def reserve(self, fingerprint: str | None, job_id: str) -> None:
        """Pin a slot for a running job."""
        with self._lock:
            self._pinned[job_id] = fingerprint
            self._evict_locked()

    def release(self, job_id: str) -> None:
        """Drop a reservation without storing a result."""
        with self._lock:
            self._pinned.pop(job_id, None)

    def put(
        self,
        fingerprint: str | None,
        job_id: str,
        graph: VisualizationGraph,
        result: CompileResult,
    ) -> None:
        """Store a completed job and release its reservation.

        The fingerprint index is only updated for cacheable results.
        """
        if result.job_id != job_id:
            raise CacheCorruptionError(
                "Result stored under a different job id",
                context={"job_id": job_id, "result_job_id": result.job_id},
            )
        if result.graph != graph:
            result = result.model_copy(update={"graph": graph})
        with self._lock:
            self._pinned.pop(job_id, None)
            self._entries[job_id] = result
            self._entries.move_to_end(job_id)
            if fingerprint is not None and result.cacheable:
                self._by_fingerprint[fingerprint] = job_id
            self._evict_locked()
        logger.debug(
            "Result stored",
            extra={"job_id": job_id, "cacheable": result.cacheable, "status": result.status.value},
        )

    def _evict_locked(self) -> None:
        while self._entries and len(self._entries) + len(self._pinned) > self._max_entries:
            job_id, result = self._entries.popitem(last=False)
            if result.fingerprint is not None and self._by_fingerprint.get(result.fingerprint) == job_id:
                del self._by_fingerprint[result.fingerprint]
            self._evictions += 1
            logger.debug("Result evicted", extra={"job_id": job_id})

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> VisualizationGraph:
        """Stored graph of a completed job.

        Raises:
            JobNotFoundError: unknown or evicted job id.
        """
        return self.get_result(job_id).graph

    def get_result(self, job_id: str) -> CompileResult:
        with self._lock:
            result = self._entries.get(job_id)
            if result is None:
                raise JobNotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
            self._entries.move_to_end(job_id)
            return result

    def lookup(self, fingerprint: str) -> CompileResult | None:
        """Reusable result for a fingerprint, or None."""
        with self._lock:
            job_id = self._by_fingerprint.get(fingerprint)
            if job_id is None:
                self._misses += 1
                return None
            result = self._entries.get(job_id)
            if result is None:
                raise CacheCorruptionError(
                    "Fingerprint index points at a missing entry",
                    context={"fingerprint": fingerprint, "job_id": job_id},
                )
            self._entries.move_to_end(job_id)
            self._hits += 1
            return result

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                pinned=len(self._pinned),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_fingerprint.clear()

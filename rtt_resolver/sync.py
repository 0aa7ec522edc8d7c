"""Quota-aware synchronization of fresh aggregates with the durable store."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from typing import TypeVar

from .aggregation import merge_client_groups
from .errors import MismatchedBucket, StorageError
from .models import ClientGroup, SyncReport
from .storage import AggregateStore, KeyResult, LookasideCache, OpStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most ``size`` items; every item appears once."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    chunk: list[T] = []
    for item in items:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


class _WriteBuffer:
    """Queues changed groups and flushes them in bulk writes of bounded size."""

    def __init__(
        self,
        store: AggregateStore,
        cache: LookasideCache | None,
        max_batch: int,
        report: SyncReport,
    ) -> None:
        self._store = store
        self._cache = cache
        self._max_batch = max_batch
        self._report = report
        self._pending: list[ClientGroup] = []

    def add(self, group: ClientGroup) -> None:
        self._pending.append(group)
        if len(self._pending) >= self._max_batch:
            self.flush()

    def flush(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        self._report.write_chunks += 1
        try:
            results = self._store.put_multi(batch)
        except StorageError as exc:
            # Buckets stay stale until a later run merges them again.
            logger.error("Bulk write of %d client groups failed: %s", len(batch), exc)
            self._report.write_errors += len(batch)
            return

        failed = 0
        for result in results:
            if result.status is OpStatus.OK:
                self._report.written += 1
                if self._cache is not None:
                    self._cache.delete(result.key)
            else:
                failed += 1
                logger.error("Write of client group %s failed: %s", result.key, result.error)
        # Keys the store did not report on are counted as failed writes.
        failed += max(0, len(batch) - len(results))
        self._report.write_errors += failed
        logger.info(
            "Wrote %d client groups (total %d)", len(batch) - failed, self._report.written
        )


class BatchSynchronizer:
    """Merges freshly computed aggregates into the store, writing only changes.

    Reads are issued in chunks of ``max_read_batch`` keys and writes in chunks
    of ``max_write_batch`` groups; the two limits are independent. Failures are
    isolated per key: an unreadable or unwritable bucket is logged and skipped,
    and is picked up again by the next ingestion run.
    """

    def __init__(
        self,
        store: AggregateStore,
        *,
        max_read_batch: int = 1000,
        max_write_batch: int = 300,
        cache: LookasideCache | None = None,
    ) -> None:
        if max_read_batch <= 0:
            raise ValueError(f"max_read_batch must be positive, got {max_read_batch}")
        if max_write_batch <= 0:
            raise ValueError(f"max_write_batch must be positive, got {max_write_batch}")
        self.store = store
        self.cache = cache
        self.max_read_batch = max_read_batch
        self.max_write_batch = max_write_batch

    def synchronize(self, aggregates: Mapping[str, ClientGroup]) -> SyncReport:
        report = SyncReport(groups=len(aggregates))
        writer = _WriteBuffer(self.store, self.cache, self.max_write_batch, report)

        for keys in chunked(aggregates, self.max_read_batch):
            report.read_chunks += 1
            try:
                results = self.store.get_multi(keys)
            except StorageError as exc:
                logger.error("Bulk read of %d client groups failed: %s", len(keys), exc)
                report.read_errors += len(keys)
                continue

            by_key = {result.key: result for result in results}
            for key in keys:
                result = by_key.get(key)
                if result is None:
                    result = KeyResult(
                        key=key, status=OpStatus.ERROR, error="missing from bulk read result"
                    )
                self._reconcile(result, aggregates[key], writer, report)

        writer.flush()
        logger.info(
            "Merged %d client groups: %d created, %d updated, %d unchanged, "
            "%d read errors, %d write errors",
            report.groups,
            report.created,
            report.updated,
            report.unchanged,
            report.read_errors,
            report.write_errors,
        )
        return report

    def _reconcile(
        self,
        result: KeyResult,
        fresh: ClientGroup,
        writer: _WriteBuffer,
        report: SyncReport,
    ) -> None:
        if result.status is OpStatus.ERROR:
            logger.error("Reading client group %s failed: %s", result.key, result.error)
            report.read_errors += 1
            return

        stored = result.value if result.status is OpStatus.OK else None
        if stored is None or stored.site_rtts is None:
            report.created += 1
            writer.add(fresh)
            return

        try:
            merged, changed = merge_client_groups(stored, fresh)
        except MismatchedBucket as exc:
            logger.error("Stored record under %s is inconsistent: %s", result.key, exc)
            report.read_errors += 1
            return

        if changed:
            report.updated += 1
            writer.add(merged)
        else:
            report.unchanged += 1

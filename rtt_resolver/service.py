"""Service orchestrating sample ingestion, merging, and import scheduling."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from .aggregation import aggregate_samples
from .errors import QueryError, StorageError
from .models import ClientGroup, RawSample, ResolverConfig, SyncReport
from .registry import SiteRegistry
from .retry import RetryPolicy
from .source import SampleQuery, SampleSource, fetch_samples
from .storage import AggregateStore, ImportLedger, LookasideCache, create_ledger, create_store
from .sync import BatchSynchronizer

logger = logging.getLogger(__name__)


class IngestionService:
    """Coordinates the RTT ingestion lifecycle.

    Samples are folded into fresh per-bucket aggregates, which are then merged
    into the durable store. Day imports pull samples from the analytical
    source and advance the import ledger only after a run without errors.
    """

    def __init__(
        self,
        config: ResolverConfig,
        registry: SiteRegistry,
        *,
        store: AggregateStore | None = None,
        source: SampleSource | None = None,
        cache: LookasideCache | None = None,
        ledger: ImportLedger | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.source = source
        self.store = store or create_store(config)
        self.store.load()
        self.ledger = ledger or create_ledger(config)
        self.retry = retry or RetryPolicy(
            max_attempts=config.retry_max_attempts,
            base_delay_s=config.retry_base_delay_s,
            multiplier=config.retry_multiplier,
        )
        self.synchronizer = BatchSynchronizer(
            self.store,
            max_read_batch=config.max_read_batch,
            max_write_batch=config.max_write_batch,
            cache=cache,
        )

    def ingest_samples(self, samples: Iterable[RawSample]) -> SyncReport:
        """Aggregate raw samples and merge them into the store."""
        aggregates = aggregate_samples(samples, self.registry.site_for_server_ip)
        return self.synchronizer.synchronize(aggregates)

    def ingest_jsonl(self, path: Path) -> SyncReport:
        """Read a JSONL file of samples and ingest."""
        with path.open("r", encoding="utf-8") as fh:
            samples = [RawSample.model_validate_json(line) for line in fh if line.strip()]
        return self.ingest_samples(samples)

    def import_day(self, day: date) -> SyncReport:
        """Pull one day of samples from the analytical source and merge them."""
        if self.source is None:
            raise RuntimeError("no analytical source configured")
        query = SampleQuery.for_day(day)
        samples = fetch_samples(
            self.source,
            query,
            page_size=self.config.page_size,
            timeout_s=self.config.query_timeout_s,
        )
        aggregates = aggregate_samples(samples, self.registry.site_for_server_ip)
        logger.info(
            "Reduced samples for %s to %d client groups, merging into store",
            day.isoformat(),
            len(aggregates),
        )
        report = self.synchronizer.synchronize(aggregates)
        if report.ok:
            self.ledger.record_import(day)
        else:
            logger.warning(
                "Import for %s finished with %d read and %d write errors; ledger not advanced",
                day.isoformat(),
                report.read_errors,
                report.write_errors,
            )
        return report

    def import_day_with_retry(self, day: date) -> SyncReport:
        return self.retry.run(lambda: self.import_day(day), job_name=f"import {day.isoformat()}")

    def latest_importable_day(self, now: datetime | None = None) -> date:
        """Most recent day the analytical source is expected to be complete for."""
        current = now or datetime.now(timezone.utc)
        return (current - timedelta(days=self.config.import_lag_days)).date()

    def import_daily(self, now: datetime | None = None) -> SyncReport:
        return self.import_day_with_retry(self.latest_importable_day(now))

    def next_import_day(self) -> date:
        last = self.ledger.last_import()
        if last is None:
            return self.config.earliest_import_date
        return last + timedelta(days=1)

    def import_all(self, now: datetime | None = None) -> dict[date, SyncReport | None]:
        """Import every day from the earliest data on record."""
        logger.warning(
            "Importing all RTT data since %s; expect heavy load on the source and store",
            self.config.earliest_import_date.isoformat(),
        )
        return self._import_range(self.config.earliest_import_date, self.latest_importable_day(now))

    def import_pending(self, now: datetime | None = None) -> dict[date, SyncReport | None]:
        """Import the days after the last successful import."""
        return self._import_range(self.next_import_day(), self.latest_importable_day(now))

    def _import_range(self, first: date, last: date) -> dict[date, SyncReport | None]:
        reports: dict[date, SyncReport | None] = {}
        day = first
        while day <= last:
            try:
                reports[day] = self.import_day_with_retry(day)
            except (QueryError, StorageError) as exc:
                logger.error("Import for %s failed: %s", day.isoformat(), exc)
                reports[day] = None
            day += timedelta(days=1)
        return reports

    def export_snapshot(self) -> list[ClientGroup]:
        """Return all stored client groups, useful for tests or diagnostics."""
        return self.store.list_groups()

    def dump_json(self) -> str:
        """Serialize the stored aggregates to JSON for callers that need a blob."""
        payload = [group.model_dump(mode="json") for group in self.store.list_groups()]
        return json.dumps(payload, indent=2)

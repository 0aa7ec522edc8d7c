"""Public API facade for the RTT resolver."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from pathlib import Path

from .models import ClientGroup, RawSample, ResolverConfig, Server, SyncReport
from .registry import InMemorySiteRegistry, SiteRegistry
from .resolver import ProximityResolver
from .service import IngestionService
from .source import JsonlSampleSource, SampleSource
from .storage import AggregateStore, ImportLedger, InMemoryLookasideCache, LookasideCache


class RTTResolverAPI:
    """High-level facade over ingestion and resolution sharing one store and cache."""

    def __init__(
        self,
        config: ResolverConfig,
        *,
        registry: SiteRegistry | None = None,
        store: AggregateStore | None = None,
        source: SampleSource | None = None,
        cache: LookasideCache | None = None,
        ledger: ImportLedger | None = None,
    ) -> None:
        self.config = config
        if registry is None:
            registry = (
                InMemorySiteRegistry.from_file(config.registry_path)
                if config.registry_path
                else InMemorySiteRegistry([])
            )
        if source is None and config.samples_path:
            source = JsonlSampleSource(config.samples_path)
        self.cache = cache if cache is not None else InMemoryLookasideCache(
            ttl_s=config.cache_ttl_s, max_entries=config.cache_max_entries
        )
        self._ingestion = IngestionService(
            config, registry, store=store, source=source, cache=self.cache, ledger=ledger
        )
        self._resolver = ProximityResolver(self._ingestion.store, registry, cache=self.cache)

    @property
    def has_source(self) -> bool:
        return self._ingestion.source is not None

    def ingest_samples(self, samples: Iterable[RawSample]) -> SyncReport:
        """Ingest in-memory samples."""
        return self._ingestion.ingest_samples(list(samples))

    def ingest_file(self, path: str | Path) -> SyncReport:
        """Load a JSONL file of samples and ingest."""
        return self._ingestion.ingest_jsonl(Path(path))

    def import_day(self, day: date) -> SyncReport:
        return self._ingestion.import_day_with_retry(day)

    def import_daily(self, now: datetime | None = None) -> SyncReport:
        return self._ingestion.import_daily(now)

    def import_all(self, now: datetime | None = None) -> dict[date, SyncReport | None]:
        return self._ingestion.import_all(now)

    def import_pending(self, now: datetime | None = None) -> dict[date, SyncReport | None]:
        return self._ingestion.import_pending(now)

    def lookup(self, client_ip: str) -> ClientGroup:
        """Return the stored aggregate for the client's group."""
        return self._resolver.lookup(client_ip)

    def resolve(self, client_ip: str, service_id: str) -> Server:
        """Return a server at the lowest-RTT site running ``service_id``."""
        return self._resolver.resolve(client_ip, service_id)

    def snapshot(self) -> list[ClientGroup]:
        """Return every stored client group."""
        return self._ingestion.export_snapshot()

    def snapshot_json(self) -> str:
        """Serialize the full store as JSON."""
        return self._ingestion.dump_json()


def build_api(config: ResolverConfig | None = None, **kwargs) -> RTTResolverAPI:
    """Convenience constructor with defaults."""
    return RTTResolverAPI(config or ResolverConfig(), **kwargs)

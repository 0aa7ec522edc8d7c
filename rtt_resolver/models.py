"""Typed data models used across the RTT resolver."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


class RawSample(BaseModel):
    """Single traceroute-derived RTT measurement from the analytical source."""

    logged_at: datetime
    server_ip: str = Field(..., min_length=1)
    client_ip: str = Field(..., min_length=1)
    rtt: float = Field(..., ge=0.0)


class SiteRTT(BaseModel):
    """Best known RTT from a client group to one site."""

    site_id: str = Field(..., min_length=1)
    rtt: float = Field(..., ge=0.0)
    last_updated: datetime


class ClientGroup(BaseModel):
    """Per-bucket aggregate: site RTTs kept in ascending RTT order.

    ``prefix`` is the string form of the bucket's network address and doubles
    as the storage and cache key. A ``None`` site list marks a record that was
    stored empty or could not be decoded.
    """

    prefix: str = Field(..., min_length=1)
    site_rtts: list[SiteRTT] | None = Field(default_factory=list)

    def find(self, site_id: str) -> SiteRTT | None:
        for site_rtt in self.site_rtts or ():
            if site_rtt.site_id == site_id:
                return site_rtt
        return None

    def sort(self) -> None:
        """Re-establish ascending RTT order; ties keep no particular order."""
        if self.site_rtts:
            self.site_rtts.sort(key=lambda s: s.rtt)

    @property
    def site_ids(self) -> list[str]:
        return [s.site_id for s in self.site_rtts or ()]


class Server(BaseModel):
    """A server running one service at a site."""

    hostname: str = Field(..., min_length=1)
    site_id: str = Field(..., min_length=1)
    service_id: str = Field(..., min_length=1)
    ipv4: str | None = None
    ipv6: str | None = None
    online: bool = True

    @property
    def address(self) -> str:
        """Address handed back to clients, IPv4 preferred."""
        return self.ipv4 or self.ipv6 or self.hostname


class SyncReport(BaseModel):
    """Outcome counters for one synchronization of aggregates with the store."""

    groups: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    read_errors: int = 0
    write_errors: int = 0
    written: int = 0
    read_chunks: int = 0
    write_chunks: int = 0

    @property
    def ok(self) -> bool:
        return self.read_errors == 0 and self.write_errors == 0


class ResolverConfig(BaseModel):
    """Runtime configuration switches."""

    max_read_batch: int = Field(1000, ge=1)
    max_write_batch: int = Field(300, ge=1)
    store_path: str | None = None
    ledger_path: str | None = None
    registry_path: str | None = None
    samples_path: str | None = None
    cache_ttl_s: float = Field(600.0, gt=0.0)
    cache_max_entries: int = Field(100_000, ge=1)
    import_lag_days: int = Field(2, ge=0)
    earliest_import_date: date = date(2013, 6, 23)
    page_size: int = Field(50_000, ge=1)
    query_timeout_s: float = Field(600.0, gt=0.0)
    retry_max_attempts: int | None = Field(5, ge=1)
    retry_base_delay_s: float = Field(2.0, ge=0.0)
    retry_multiplier: float = Field(2.0, ge=1.0)

"""Analytical data source contract and paginated sample retrieval."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterator, Sequence
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .bucketing import normalize_ip
from .errors import QueryError
from .models import RawSample

logger = logging.getLogger(__name__)

TABLE_FORMAT = "measurement-lab:m_lab.{year:04d}_{month:02d}"

# Averages traceroute hop RTTs per (time, server, hop) for one day, keeping
# only hops with an RTT and dropping the hop that is the client itself.
QUERY_FORMAT = """SELECT
    log_time,
    connection_spec.server_ip,
    paris_traceroute_hop.dest_ip,
    AVG(paris_traceroute_hop.rtt) AS rtt
FROM [{table}]
WHERE
    project = 3 AND
    log_time > {start} AND
    log_time < {end} AND
    log_time IS NOT NULL AND
    connection_spec.server_ip IS NOT NULL AND
    paris_traceroute_hop.dest_ip IS NOT NULL AND
    paris_traceroute_hop.rtt IS NOT NULL AND
    connection_spec.client_ip != paris_traceroute_hop.dest_ip
GROUP EACH BY
    log_time,
    connection_spec.server_ip,
    paris_traceroute_hop.dest_ip;"""

Row = Sequence[Any]


class SampleQuery(BaseModel):
    """Request parameters for one period of RTT samples."""

    table: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime

    @classmethod
    def for_day(cls, day: date) -> SampleQuery:
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        return cls(
            table=TABLE_FORMAT.format(year=day.year, month=day.month),
            start_time=start,
            end_time=start + timedelta(days=1) - timedelta(seconds=1),
        )

    @property
    def sql(self) -> str:
        return QUERY_FORMAT.format(
            table=self.table,
            start=int(self.start_time.timestamp()),
            end=int(self.end_time.timestamp()),
        )


class QueryPage(BaseModel):
    """One page of result rows: ``(logged_time, server_ip, client_ip, avg_rtt)``."""

    rows: list[list[Any]]
    total_rows: int = Field(..., ge=0)
    page_token: str | None = None


class SampleSource(Protocol):
    """Analytical source contract.

    Implementations raise :class:`~rtt_resolver.errors.QueryError` (or
    ``TimeoutError``) when a page cannot be fetched within ``timeout_s``.
    """

    def fetch_page(
        self,
        query: SampleQuery,
        *,
        page_token: str | None,
        max_results: int,
        timeout_s: float,
    ) -> QueryPage: ...


def parse_row(row: Row) -> RawSample | None:
    """Convert a raw result row into a sample, or ``None`` if any cell is unusable."""
    if len(row) < 4:
        return None
    logged, server, client, rtt_cell = row[0], row[1], row[2], row[3]
    server_ip = normalize_ip(str(server)) if server is not None else None
    client_ip = normalize_ip(str(client)) if client is not None else None
    if server_ip is None or client_ip is None:
        return None
    try:
        rtt = float(rtt_cell)
        logged_at = datetime.fromtimestamp(int(logged), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    if math.isnan(rtt) or math.isinf(rtt) or rtt < 0:
        return None
    return RawSample(logged_at=logged_at, server_ip=server_ip, client_ip=client_ip, rtt=rtt)


def fetch_samples(
    source: SampleSource,
    query: SampleQuery,
    *,
    page_size: int = 50_000,
    timeout_s: float = 600.0,
) -> Iterator[RawSample]:
    """Yield every parseable sample, following pages until the reported total."""
    logger.debug("Querying %s: %s", query.table, query.sql)
    page = _fetch(source, query, None, page_size, timeout_s)
    total = page.total_rows
    if total == 0:
        raise QueryError(f"no rows received for {query.table} {query.start_time.date()}")

    received = len(page.rows)
    logger.info("Received %d rows in query response (total: %d rows)", received, total)
    yield from _parse_rows(page.rows)

    while received < total:
        if not page.page_token:
            raise QueryError(f"result ended after {received} of {total} rows")
        page = _fetch(source, query, page.page_token, page_size, timeout_s)
        if not page.rows:
            raise QueryError(f"empty page after {received} of {total} rows")
        received += len(page.rows)
        logger.info("Received %d additional rows (total: %d rows)", len(page.rows), received)
        yield from _parse_rows(page.rows)


def _fetch(
    source: SampleSource,
    query: SampleQuery,
    page_token: str | None,
    page_size: int,
    timeout_s: float,
) -> QueryPage:
    try:
        return source.fetch_page(
            query, page_token=page_token, max_results=page_size, timeout_s=timeout_s
        )
    except QueryError:
        raise
    except (TimeoutError, OSError) as exc:
        raise QueryError(f"query for {query.table} failed: {exc}") from exc


def _parse_rows(rows: list[list[Any]]) -> Iterator[RawSample]:
    for row in rows:
        sample = parse_row(row)
        if sample is not None:
            yield sample


class JsonlSampleSource:
    """Serve exported rows from a JSONL file, filtered to the query window.

    Each line is either a ``[logged_time, server_ip, client_ip, rtt]`` list or
    an object with those keys. Page tokens are row offsets.
    """

    _FIELDS = ("logged_time", "server_ip", "client_ip", "rtt")

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def fetch_page(
        self,
        query: SampleQuery,
        *,
        page_token: str | None,
        max_results: int,
        timeout_s: float,
    ) -> QueryPage:
        rows = self._rows_for(query)
        offset = int(page_token) if page_token else 0
        page = rows[offset : offset + max_results]
        end = offset + len(page)
        return QueryPage(
            rows=page,
            total_rows=len(rows),
            page_token=str(end) if end < len(rows) else None,
        )

    def _rows_for(self, query: SampleQuery) -> list[list[Any]]:
        if not self.path.exists():
            raise QueryError(f"sample export {self.path} does not exist")
        start = query.start_time.timestamp()
        end = query.end_time.timestamp()
        rows: list[list[Any]] = []
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                row = [data.get(f) for f in self._FIELDS] if isinstance(data, dict) else list(data)
                try:
                    logged = float(row[0])
                except (TypeError, ValueError, IndexError):
                    continue
                if start <= logged <= end:
                    rows.append(row)
        return rows

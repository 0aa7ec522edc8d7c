"""Storage backends for client group aggregates."""

from __future__ import annotations

import json
import logging
import tempfile
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Protocol

from cachetools import TTLCache
from pydantic import BaseModel, ValidationError

from .models import ClientGroup, ResolverConfig

logger = logging.getLogger(__name__)


class OpStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ERROR = "error"


class KeyResult(BaseModel):
    """Per-key outcome of a bulk store operation."""

    key: str
    status: OpStatus
    value: ClientGroup | None = None
    error: str | None = None


class AggregateStore(Protocol):
    """Durable aggregate store contract.

    Bulk operations return one result per key, in request order. A failure of
    the whole operation (timeout, lost connection) is raised as
    :class:`~rtt_resolver.errors.StorageError`.
    """

    def load(self) -> None: ...

    def get_multi(self, keys: Sequence[str]) -> list[KeyResult]: ...

    def put_multi(self, groups: Sequence[ClientGroup]) -> list[KeyResult]: ...

    def list_groups(self) -> list[ClientGroup]: ...

    def clear(self) -> None: ...


@dataclass
class InMemoryAggregateStore(AggregateStore):
    """Simple in-memory store, convenient for tests."""

    _groups: dict[str, ClientGroup] = field(default_factory=dict)

    def load(self) -> None:
        return None

    def get_multi(self, keys: Sequence[str]) -> list[KeyResult]:
        results: list[KeyResult] = []
        for key in keys:
            group = self._groups.get(key)
            if group is None:
                results.append(KeyResult(key=key, status=OpStatus.NOT_FOUND))
            else:
                results.append(
                    KeyResult(key=key, status=OpStatus.OK, value=group.model_copy(deep=True))
                )
        return results

    def put_multi(self, groups: Sequence[ClientGroup]) -> list[KeyResult]:
        for group in groups:
            self._groups[group.prefix] = group.model_copy(deep=True)
        return [KeyResult(key=g.prefix, status=OpStatus.OK) for g in groups]

    def list_groups(self) -> list[ClientGroup]:
        return [g.model_copy(deep=True) for g in self._groups.values()]

    def clear(self) -> None:
        self._groups.clear()


@dataclass
class JsonlAggregateStore(AggregateStore):
    """Persist client groups to a JSONL file, one group per line.

    Writers are serialized so the file always matches the in-memory view.
    """

    path: Path
    _groups: InMemoryAggregateStore = field(default_factory=InMemoryAggregateStore)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def load(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as fh:
            lines = fh.readlines()
        parsed: list[ClientGroup] = []
        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            group = _decode_line(line)
            if group is None:
                logger.warning("Skipping undecodable line %d in %s", lineno, self.path)
                continue
            parsed.append(group)
        self._groups.clear()
        self._groups.put_multi(parsed)

    def get_multi(self, keys: Sequence[str]) -> list[KeyResult]:
        return self._groups.get_multi(keys)

    def put_multi(self, groups: Sequence[ClientGroup]) -> list[KeyResult]:
        with self._lock:
            snapshot = {g.prefix: g for g in self._groups.list_groups()}
            snapshot.update((g.prefix, g) for g in groups)
            try:
                self._flush(snapshot.values())
            except OSError as exc:
                logger.error(
                    "Failed to write %d client groups to %s: %s", len(groups), self.path, exc
                )
                return [
                    KeyResult(key=g.prefix, status=OpStatus.ERROR, error=str(exc))
                    for g in groups
                ]
            return self._groups.put_multi(groups)

    def list_groups(self) -> list[ClientGroup]:
        return self._groups.list_groups()

    def clear(self) -> None:
        with self._lock:
            self._groups.clear()
            if self.path.exists():
                self.path.unlink()

    def _flush(self, groups) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=self.path.name + ".",
            suffix=".tmp",
            delete=False,
        )
        tmp = Path(fh.name)
        try:
            with fh:
                for group in groups:
                    fh.write(group.model_dump_json())
                    fh.write("\n")
            tmp.replace(self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise


def _decode_line(line: str) -> ClientGroup | None:
    """Decode a stored line; a record with a usable prefix but a broken body
    comes back with ``site_rtts=None`` so readers can treat it as empty."""
    try:
        return ClientGroup.model_validate_json(line)
    except ValidationError:
        pass
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    prefix = data.get("prefix") if isinstance(data, dict) else None
    if not isinstance(prefix, str) or not prefix:
        return None
    return ClientGroup(prefix=prefix, site_rtts=None)


class LookasideCache(Protocol):
    """Short-lived cache in front of the durable store. A miss returns ``None``."""

    def get(self, key: str) -> ClientGroup | None: ...

    def set(self, group: ClientGroup) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass
class InMemoryLookasideCache(LookasideCache):
    """Process-local cache with a fixed time-to-live per entry.

    Expired entries are purged on every write and the entry count is bounded
    by ``max_entries``; the least recently used entry is evicted first.
    """

    ttl_s: float = 600.0
    clock: Callable[[], float] = time.monotonic
    max_entries: int = 100_000
    _items: TTLCache = field(init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._items = TTLCache(maxsize=self.max_entries, ttl=self.ttl_s, timer=self.clock)

    @property
    def size(self) -> int:
        """Number of entries currently held."""
        with self._lock:
            return len(self._items)

    def get(self, key: str) -> ClientGroup | None:
        with self._lock:
            group = self._items.get(key)
        return group.model_copy(deep=True) if group is not None else None

    def set(self, group: ClientGroup) -> None:
        with self._lock:
            self._items[group.prefix] = group.model_copy(deep=True)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class ImportLedger(Protocol):
    """Records the most recent day whose import completed without errors."""

    def last_import(self) -> date | None: ...

    def record_import(self, day: date) -> bool: ...


@dataclass
class InMemoryImportLedger(ImportLedger):
    _last: date | None = None

    def last_import(self) -> date | None:
        return self._last

    def record_import(self, day: date) -> bool:
        """Advance the ledger to ``day``; older days are ignored."""
        if self._last is not None and day <= self._last:
            return False
        logger.info("Last successful import date is now %s", day.isoformat())
        self._last = day
        return True


@dataclass
class JsonImportLedger(ImportLedger):
    """Ledger persisted as a small JSON document."""

    path: Path

    def last_import(self) -> date | None:
        if not self.path.exists():
            return None
        data = json.loads(self.path.read_text(encoding="utf-8"))
        value = data.get("last_successful_import")
        return date.fromisoformat(value) if value else None

    def record_import(self, day: date) -> bool:
        last = self.last_import()
        if last is not None and day <= last:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps({"last_successful_import": day.isoformat()}), encoding="utf-8"
        )
        logger.info("Last successful import date is now %s", day.isoformat())
        return True


def create_store(config: ResolverConfig) -> AggregateStore:
    """Factory helper selecting the appropriate store."""
    if config.store_path:
        return JsonlAggregateStore(path=Path(config.store_path))
    return InMemoryAggregateStore()


def create_ledger(config: ResolverConfig) -> ImportLedger:
    if config.ledger_path:
        return JsonImportLedger(path=Path(config.ledger_path))
    return InMemoryImportLedger()

"""Read-only site and server inventory used by ingestion and resolution."""

from __future__ import annotations

import json
import random
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from .bucketing import normalize_ip
from .models import Server


class SiteRegistry(Protocol):
    """Site registry contract."""

    def site_for_server_ip(self, ip: str) -> str | None: ...

    def random_online_server(self, site_id: str, service_id: str) -> Server | None: ...


class InMemorySiteRegistry:
    """Registry built once from a list of servers and never mutated afterwards."""

    def __init__(self, servers: Iterable[Server], *, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self._servers: list[Server] = list(servers)
        self._site_by_ip: dict[str, str] = {}
        self._by_site_service: dict[tuple[str, str], list[Server]] = defaultdict(list)
        for server in self._servers:
            for ip in (server.ipv4, server.ipv6):
                normalized = normalize_ip(ip) if ip else None
                if normalized:
                    self._site_by_ip[normalized] = server.site_id
            self._by_site_service[(server.site_id, server.service_id)].append(server)

    @classmethod
    def from_file(cls, path: str | Path, *, rng: random.Random | None = None) -> InMemorySiteRegistry:
        """Load a JSON list of server records."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls((Server.model_validate(item) for item in data), rng=rng)

    @property
    def servers(self) -> list[Server]:
        return list(self._servers)

    def site_for_server_ip(self, ip: str) -> str | None:
        normalized = normalize_ip(ip)
        if normalized is None:
            return None
        return self._site_by_ip.get(normalized)

    def random_online_server(self, site_id: str, service_id: str) -> Server | None:
        """Uniformly random online server for ``service_id`` at ``site_id``."""
        online = [s for s in self._by_site_service.get((site_id, service_id), ()) if s.online]
        if not online:
            return None
        return self._rng.choice(online)

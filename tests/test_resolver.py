from __future__ import annotations

import random
from collections.abc import Sequence
from datetime import datetime, timezone

import pytest

from rtt_resolver.errors import InsufficientData, InvalidAddress, StorageError
from rtt_resolver.models import ClientGroup, Server, SiteRTT
from rtt_resolver.registry import InMemorySiteRegistry
from rtt_resolver.resolver import ProximityResolver
from rtt_resolver.storage import (
    InMemoryAggregateStore,
    InMemoryLookasideCache,
    KeyResult,
    OpStatus,
)

T0 = datetime(2014, 1, 1, tzinfo=timezone.utc)


def _server(host: str, site: str, ip: str, *, online: bool = True, service: str = "ndt") -> Server:
    return Server(hostname=host, site_id=site, service_id=service, ipv4=ip, online=online)


def _store_with(*pairs: tuple[str, float], prefix: str = "154.54.36.0") -> InMemoryAggregateStore:
    store = InMemoryAggregateStore()
    store.put_multi(
        [
            ClientGroup(
                prefix=prefix,
                site_rtts=[SiteRTT(site_id=s, rtt=r, last_updated=T0) for s, r in pairs],
            )
        ]
    )
    return store


def test_resolve_prefers_lowest_rtt_site() -> None:
    registry = InMemorySiteRegistry(
        [
            _server("ndt.lca01", "lca01", "82.116.199.10"),
            _server("ndt.lga01", "lga01", "74.63.50.10"),
        ]
    )
    resolver = ProximityResolver(_store_with(("lca01", 62.0), ("lga01", 761.5)), registry)
    assert resolver.resolve("154.54.37.200", "ndt").site_id == "lca01"


def test_resolve_falls_back_when_best_site_is_offline() -> None:
    registry = InMemorySiteRegistry(
        [
            _server("ndt.lca01", "lca01", "82.116.199.10", online=False),
            _server("ndt.lga01", "lga01", "74.63.50.10"),
        ]
    )
    resolver = ProximityResolver(_store_with(("lca01", 62.0), ("lga01", 761.5)), registry)
    assert resolver.resolve("154.54.36.18", "ndt").address == "74.63.50.10"


def test_resolve_skips_sites_without_requested_service() -> None:
    registry = InMemorySiteRegistry(
        [
            _server("npad.lca01", "lca01", "82.116.199.11", service="npad"),
            _server("ndt.lga01", "lga01", "74.63.50.10"),
        ]
    )
    resolver = ProximityResolver(_store_with(("lca01", 62.0), ("lga01", 761.5)), registry)
    assert resolver.resolve("154.54.36.18", "ndt").site_id == "lga01"
    assert resolver.resolve("154.54.36.18", "npad").site_id == "lca01"


def test_resolve_without_eligible_server_is_insufficient_data() -> None:
    registry = InMemorySiteRegistry([_server("ndt.lca01", "lca01", "82.116.199.10", online=False)])
    resolver = ProximityResolver(_store_with(("lca01", 62.0)), registry)
    with pytest.raises(InsufficientData):
        resolver.resolve("154.54.36.18", "ndt")


def test_resolve_unknown_bucket_is_insufficient_data() -> None:
    resolver = ProximityResolver(InMemoryAggregateStore(), InMemorySiteRegistry([]))
    with pytest.raises(InsufficientData):
        resolver.resolve("8.8.8.8", "ndt")


def test_resolve_invalid_address() -> None:
    resolver = ProximityResolver(InMemoryAggregateStore(), InMemorySiteRegistry([]))
    with pytest.raises(InvalidAddress):
        resolver.resolve("not-an-ip", "ndt")


def test_random_choice_is_uniform_over_online_servers_at_site() -> None:
    servers = [_server(f"ndt{i}.lca01", "lca01", f"82.116.199.{i}") for i in range(1, 4)]
    servers.append(_server("ndt9.lca01", "lca01", "82.116.199.9", online=False))
    registry = InMemorySiteRegistry(servers, rng=random.Random(7))
    resolver = ProximityResolver(_store_with(("lca01", 1.0)), registry)

    seen = {resolver.resolve("154.54.36.18", "ndt").hostname for _ in range(200)}
    assert seen == {"ndt1.lca01", "ndt2.lca01", "ndt3.lca01"}


def test_lookup_populates_and_uses_cache() -> None:
    store = _store_with(("lca01", 62.0))
    cache = InMemoryLookasideCache(ttl_s=60.0)
    resolver = ProximityResolver(store, InMemorySiteRegistry([]), cache=cache)

    assert resolver.lookup("154.54.36.18").site_ids == ["lca01"]
    assert cache.get("154.54.36.0") is not None

    store.clear()
    assert resolver.lookup("154.54.36.18").site_ids == ["lca01"]


def test_cache_entries_expire() -> None:
    now = [0.0]
    cache = InMemoryLookasideCache(ttl_s=10.0, clock=lambda: now[0])
    cache.set(ClientGroup(prefix="10.0.0.0"))
    assert cache.get("10.0.0.0") is not None
    now[0] = 10.0
    assert cache.get("10.0.0.0") is None


def test_cache_purges_expired_entries_on_write() -> None:
    now = [0.0]
    cache = InMemoryLookasideCache(ttl_s=1.0, clock=lambda: now[0])
    for i in range(500):
        cache.set(ClientGroup(prefix=f"10.{i // 250}.{i % 250}.0"))
    assert cache.size == 500

    now[0] = 100.0
    cache.set(ClientGroup(prefix="192.168.0.0"))
    assert cache.size == 1


def test_cache_is_bounded() -> None:
    cache = InMemoryLookasideCache(ttl_s=60.0, max_entries=2)
    for prefix in ("10.0.0.0", "10.0.4.0", "10.0.8.0"):
        cache.set(ClientGroup(prefix=prefix))
    assert cache.size == 2
    assert cache.get("10.0.0.0") is None
    assert cache.get("10.0.8.0") is not None


class _SilentStore(InMemoryAggregateStore):
    def get_multi(self, keys: Sequence[str]) -> list[KeyResult]:
        return []


def test_lookup_without_result_for_key_is_storage_error() -> None:
    resolver = ProximityResolver(_SilentStore(), InMemorySiteRegistry([]))
    with pytest.raises(StorageError):
        resolver.lookup("154.54.36.18")


class _BrokenStore(InMemoryAggregateStore):
    def get_multi(self, keys: Sequence[str]) -> list[KeyResult]:
        return [KeyResult(key=k, status=OpStatus.ERROR, error="unavailable") for k in keys]


def test_lookup_surfaces_storage_errors() -> None:
    resolver = ProximityResolver(_BrokenStore(), InMemorySiteRegistry([]))
    with pytest.raises(StorageError):
        resolver.lookup("154.54.36.18")


def test_registry_maps_server_ips_to_sites() -> None:
    registry = InMemorySiteRegistry(
        [
            Server(
                hostname="ndt.lga01",
                site_id="lga01",
                service_id="ndt",
                ipv4="74.63.50.43",
                ipv6="2001:0db8::0001",
            )
        ]
    )
    assert registry.site_for_server_ip("74.63.50.43") == "lga01"
    assert registry.site_for_server_ip("2001:db8::1") == "lga01"
    assert registry.site_for_server_ip("10.9.9.9") is None
    assert registry.site_for_server_ip("junk") is None

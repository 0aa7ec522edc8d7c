"""Read path: turn a client group's ranked sites into a concrete server."""

from __future__ import annotations

import logging

from .bucketing import bucket_key
from .errors import InsufficientData, StorageError
from .models import ClientGroup, Server
from .registry import SiteRegistry
from .storage import AggregateStore, LookasideCache, OpStatus

logger = logging.getLogger(__name__)


class ProximityResolver:
    """Picks a server at the lowest-RTT site that can serve the request.

    Holds no per-request state; concurrent calls are independent.
    """

    def __init__(
        self,
        store: AggregateStore,
        registry: SiteRegistry,
        *,
        cache: LookasideCache | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.cache = cache

    def lookup(self, client_ip: str) -> ClientGroup:
        """Fetch the stored aggregate for the client's group, cache first."""
        key = bucket_key(client_ip)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        result = next((r for r in self.store.get_multi([key]) if r.key == key), None)
        if result is None:
            raise StorageError(f"store returned no result for client group {key}")
        if result.status is OpStatus.ERROR:
            raise StorageError(f"reading client group {key} failed: {result.error}")
        group = result.value if result.status is OpStatus.OK else None
        if group is None or not group.site_rtts:
            raise InsufficientData(f"no RTT data for client group {key}")

        if self.cache is not None:
            self.cache.set(group)
        return group

    def resolve(self, client_ip: str, service_id: str) -> Server:
        group = self.lookup(client_ip)
        for site_rtt in group.site_rtts or ():
            server = self.registry.random_online_server(site_rtt.site_id, service_id)
            if server is not None:
                logger.debug(
                    "Resolved %s for %s to %s at %s (rtt=%.1f)",
                    service_id,
                    client_ip,
                    server.address,
                    site_rtt.site_id,
                    site_rtt.rtt,
                )
                return server
        raise InsufficientData(
            f"no online {service_id} server at any of {len(group.site_rtts or ())} "
            f"sites known for client group {group.prefix}"
        )

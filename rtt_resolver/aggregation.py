"""Aggregation helpers folding RTT samples into per-client-group minimums."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from .bucketing import bucket_key
from .errors import InvalidAddress, MismatchedBucket
from .models import ClientGroup, RawSample, SiteRTT

logger = logging.getLogger(__name__)

AggregateMap = dict[str, ClientGroup]
SiteLookup = Callable[[str], str | None]


def merge_site_rtt(old: SiteRTT, new: SiteRTT) -> bool:
    """Take-minimum update of ``old`` in place, reporting whether it changed.

    A lower RTT replaces the stored one together with its timestamp. An equal
    RTT only moves the timestamp forward, so a site that keeps tying for best
    stays fresh while replayed older samples leave it alone.
    """
    if old.site_id != new.site_id:
        raise ValueError(f"cannot merge RTT for site {new.site_id!r} into {old.site_id!r}")
    if new.rtt < old.rtt:
        old.rtt = new.rtt
        old.last_updated = new.last_updated
        return True
    if new.rtt == old.rtt and new.last_updated > old.last_updated:
        old.last_updated = new.last_updated
        return True
    return False


def fold_sample(
    aggregates: AggregateMap, sample: RawSample, site_lookup: SiteLookup
) -> str | None:
    """Fold one sample into ``aggregates``.

    Returns the bucket key when the bucket changed and needs re-sorting, or
    ``None`` when nothing changed. Samples from servers unknown to
    ``site_lookup`` are dropped. Sorting is left to the caller so a batch of
    samples sorts each bucket once.
    """
    site_id = site_lookup(sample.server_ip)
    if site_id is None:
        return None

    key = bucket_key(sample.client_ip)
    group = aggregates.get(key)
    if group is None or group.site_rtts is None:
        group = ClientGroup(prefix=key)
        aggregates[key] = group

    incoming = SiteRTT(site_id=site_id, rtt=sample.rtt, last_updated=sample.logged_at)
    existing = group.find(site_id)
    if existing is None:
        group.site_rtts.append(incoming)
        return key
    return key if merge_site_rtt(existing, incoming) else None


def aggregate_samples(
    samples: Iterable[RawSample],
    site_lookup: SiteLookup,
    *,
    aggregates: AggregateMap | None = None,
) -> AggregateMap:
    """Fold raw samples into client group aggregates keyed by bucket."""
    result: AggregateMap = aggregates if aggregates is not None else {}
    to_sort: set[str] = set()
    folded = dropped = 0
    for sample in samples:
        try:
            key = fold_sample(result, sample, site_lookup)
        except InvalidAddress:
            logger.debug("Skipping sample with unparseable client %r", sample.client_ip)
            dropped += 1
            continue
        folded += 1
        if key is not None:
            to_sort.add(key)

    for key in to_sort:
        result[key].sort()
    logger.debug(
        "Folded %d samples (%d dropped) into %d client groups", folded, dropped, len(result)
    )
    return result


def merge_client_groups(old: ClientGroup, new: ClientGroup) -> tuple[ClientGroup, bool]:
    """Merge ``new`` into a copy of ``old`` keeping the minimum RTT per site.

    Neither input is modified. Merging the same data twice is a no-op the
    second time.
    """
    if old.prefix != new.prefix:
        raise MismatchedBucket(old.prefix, new.prefix)

    merged = old.model_copy(deep=True)
    if merged.site_rtts is None:
        merged.site_rtts = []
    by_site = {s.site_id: s for s in merged.site_rtts}

    changed = False
    for incoming in new.site_rtts or ():
        current = by_site.get(incoming.site_id)
        if current is None:
            added = incoming.model_copy()
            merged.site_rtts.append(added)
            by_site[added.site_id] = added
            changed = True
        elif merge_site_rtt(current, incoming):
            changed = True

    merged.sort()
    return merged, changed

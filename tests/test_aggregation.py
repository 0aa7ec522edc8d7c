from __future__ import annotations

from datetime import datetime, timezone

import pytest

from rtt_resolver.aggregation import (
    aggregate_samples,
    fold_sample,
    merge_client_groups,
    merge_site_rtt,
)
from rtt_resolver.errors import MismatchedBucket
from rtt_resolver.models import ClientGroup, RawSample, SiteRTT

SITES = {"74.63.50.43": "lga01", "82.116.199.38": "lca01", "10.0.0.1": "abc01"}


def _ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _sr(site: str, rtt: float, seconds: int) -> SiteRTT:
    return SiteRTT(site_id=site, rtt=rtt, last_updated=_ts(seconds))


def _group(*site_rtts: SiteRTT, prefix: str = "173.194.36.0") -> ClientGroup:
    return ClientGroup(prefix=prefix, site_rtts=list(site_rtts))


def _sample(server: str, client: str, rtt: float, seconds: int = 1) -> RawSample:
    return RawSample(logged_at=_ts(seconds), server_ip=server, client_ip=client, rtt=rtt)


def test_merge_site_rtt_takes_lower_new_value() -> None:
    old = _sr("abc01", 1.1, 1)
    assert merge_site_rtt(old, _sr("abc01", 0.9, 2)) is True
    assert old.rtt == 0.9
    assert old.last_updated == _ts(2)


def test_merge_site_rtt_keeps_lower_old_value() -> None:
    old = _sr("abc01", 0.1, 1)
    assert merge_site_rtt(old, _sr("abc01", 1.1, 2)) is False
    assert old == _sr("abc01", 0.1, 1)


def test_merge_site_rtt_equal_rtt_refreshes_timestamp() -> None:
    old = _sr("abc01", 5.0, 1)
    assert merge_site_rtt(old, _sr("abc01", 5.0, 9)) is True
    assert old.last_updated == _ts(9)
    assert merge_site_rtt(old, _sr("abc01", 5.0, 9)) is False


def test_merge_site_rtt_equal_rtt_with_older_timestamp_is_ignored() -> None:
    old = _sr("abc01", 5.0, 9)
    assert merge_site_rtt(old, _sr("abc01", 5.0, 3)) is False
    assert old.last_updated == _ts(9)


def test_merge_site_rtt_lower_rtt_wins_even_when_older() -> None:
    old = _sr("abc01", 5.0, 9)
    assert merge_site_rtt(old, _sr("abc01", 4.0, 3)) is True
    assert old == _sr("abc01", 4.0, 3)


def test_merge_site_rtt_rejects_other_site() -> None:
    with pytest.raises(ValueError):
        merge_site_rtt(_sr("abc01", 1.0, 1), _sr("def01", 0.5, 1))


def test_aggregate_samples_end_to_end_scenario() -> None:
    samples = [
        _sample("74.63.50.43", "154.54.36.18", 761.5, 1),
        _sample("82.116.199.38", "154.54.39.18", 62.0, 2),
    ]
    result = aggregate_samples(samples, SITES.get)
    assert list(result) == ["154.54.36.0"]
    group = result["154.54.36.0"]
    assert [(s.site_id, s.rtt) for s in group.site_rtts] == [("lca01", 62.0), ("lga01", 761.5)]


def test_aggregate_samples_keeps_minimum_per_site_and_sorts() -> None:
    samples = [
        _sample("10.0.0.1", "173.194.36.73", 40.0, 1),
        _sample("74.63.50.43", "173.194.36.74", 30.0, 2),
        _sample("10.0.0.1", "173.194.37.1", 20.0, 3),
        _sample("10.0.0.1", "173.194.38.1", 25.0, 4),
    ]
    group = aggregate_samples(samples, SITES.get)["173.194.36.0"]
    assert [(s.site_id, s.rtt) for s in group.site_rtts] == [("abc01", 20.0), ("lga01", 30.0)]
    assert group.find("abc01").last_updated == _ts(3)


def test_aggregate_samples_drops_unknown_servers_and_bad_clients() -> None:
    samples = [
        _sample("192.0.2.99", "173.194.36.73", 1.0),
        _sample("10.0.0.1", "garbage", 1.0),
    ]
    assert aggregate_samples(samples, SITES.get) == {}


def test_fold_sample_reports_changed_bucket() -> None:
    aggregates: dict[str, ClientGroup] = {}
    assert fold_sample(aggregates, _sample("10.0.0.1", "173.194.36.1", 5.0), SITES.get) == (
        "173.194.36.0"
    )
    assert fold_sample(aggregates, _sample("10.0.0.1", "173.194.36.2", 6.0), SITES.get) is None
    assert fold_sample(aggregates, _sample("192.0.2.1", "173.194.36.2", 1.0), SITES.get) is None
    assert len(aggregates["173.194.36.0"].site_rtts) == 1


def test_merge_client_groups_insert_and_update() -> None:
    old = _group(_sr("abc01", 1.1, 1))
    new = _group(_sr("abc01", 0.9, 3), _sr("def01", 4.2, 2))
    merged, changed = merge_client_groups(old, new)
    assert changed is True
    assert merged.site_rtts == [_sr("abc01", 0.9, 3), _sr("def01", 4.2, 2)]
    # inputs untouched
    assert old.site_rtts == [_sr("abc01", 1.1, 1)]


def test_merge_client_groups_insert_only() -> None:
    merged, changed = merge_client_groups(
        _group(_sr("abc01", 0.9, 3)), _group(_sr("def01", 4.2, 2))
    )
    assert changed is True
    assert merged.site_ids == ["abc01", "def01"]


def test_merge_client_groups_no_change_when_new_is_worse() -> None:
    old = _group(_sr("abc01", 0.7, 4), _sr("def01", 4.0, 5))
    new = _group(_sr("abc01", 0.9, 3), _sr("def01", 4.2, 2))
    merged, changed = merge_client_groups(old, new)
    assert changed is False
    assert merged == old


def test_merge_client_groups_resorts_after_update() -> None:
    old = _group(_sr("abc01", 1.0, 1), _sr("def01", 2.0, 1))
    new = _group(_sr("def01", 0.5, 2))
    merged, _ = merge_client_groups(old, new)
    assert merged.site_ids == ["def01", "abc01"]


def test_merge_client_groups_idempotent() -> None:
    a = _group(_sr("abc01", 3.0, 1), _sr("def01", 1.0, 1))
    b = _group(_sr("abc01", 2.0, 2), _sr("ghi01", 5.0, 2), _sr("def01", 1.5, 2))
    once, _ = merge_client_groups(a, b)
    twice, changed = merge_client_groups(once, b)
    assert changed is False
    assert twice == once


def test_merge_client_groups_with_itself_is_noop() -> None:
    a = _group(_sr("abc01", 1.0, 1), _sr("def01", 2.0, 1))
    merged, changed = merge_client_groups(a, a)
    assert changed is False
    assert merged == a


def test_merge_client_groups_rejects_mismatched_bucket() -> None:
    old = _group(_sr("abc01", 1.0, 1))
    new = _group(_sr("abc01", 0.1, 2), prefix="10.0.0.0")
    with pytest.raises(MismatchedBucket):
        merge_client_groups(old, new)
    assert old.site_rtts == [_sr("abc01", 1.0, 1)]
    assert new.site_rtts == [_sr("abc01", 0.1, 2)]


def test_merge_client_groups_tolerates_missing_old_site_list() -> None:
    old = ClientGroup(prefix="173.194.36.0", site_rtts=None)
    merged, changed = merge_client_groups(old, _group(_sr("abc01", 1.0, 1)))
    assert changed is True
    assert merged.site_ids == ["abc01"]

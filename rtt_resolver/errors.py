"""Error kinds raised by the RTT resolver."""

from __future__ import annotations


class RTTResolverError(Exception):
    """Base class for every resolver error."""


class InvalidAddress(RTTResolverError, ValueError):
    """Raised when a client address cannot be parsed as IPv4 or IPv6."""

    def __init__(self, value: object) -> None:
        super().__init__(f"invalid IP address: {value!r}")
        self.value = value


class InsufficientData(RTTResolverError, LookupError):
    """Raised when no aggregate or no eligible server exists for a client."""

    def __init__(self, message: str = "insufficient RTT data to answer this query") -> None:
        super().__init__(message)


class MismatchedBucket(RTTResolverError):
    """Raised when merging aggregates that belong to different client groups."""

    def __init__(self, old_prefix: str, new_prefix: str) -> None:
        super().__init__(f"cannot merge client group {new_prefix} into {old_prefix}")
        self.old_prefix = old_prefix
        self.new_prefix = new_prefix


class StorageError(RTTResolverError):
    """Transient durable-store failure; recovered by the next ingestion run."""


class QueryError(RTTResolverError):
    """Transient analytical-source failure; the ingestion run should be rescheduled."""

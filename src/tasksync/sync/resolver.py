"""
Last-write-wins conflict resolution.

Both versions only need an ``updated_at`` attribute; the winner is returned
as-is (same object), so callers can tell which side won with ``is``.
"""
from typing import TypeVar, Union

from tasksync.timeutil import to_naive_utc

CONFLICT_UNRESOLVABLE = "Conflict without resolvable data"

L = TypeVar("L")
R = TypeVar("R")


def resolve(local: L, remote: R) -> Union[L, R]:
    """Pick the version with the later updated_at. Ties go to the local version."""
    local_updated = to_naive_utc(local.updated_at)
    remote_updated = to_naive_utc(remote.updated_at)
    return local if local_updated >= remote_updated else remote

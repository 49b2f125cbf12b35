"""
cairn/reconcile/differ.py

Host-set difference between the observed and the desired host lists.
"""

from __future__ import annotations

from typing import Iterable

from cairn.models.cluster import unique_in_order
from cairn.models.plan import HostDiff


def diff_hosts(old: Iterable[str], new: Iterable[str]) -> HostDiff:
    """
    Treat both lists as sets: `to_join = new - old`, `to_delete = old - new`.
    Duplicates collapse; each output keeps first-seen order of its source list.
    """
    old_ips = unique_in_order(list(old))
    new_ips = unique_in_order(list(new))
    old_set, new_set = set(old_ips), set(new_ips)
    return HostDiff(
        to_join=tuple(ip for ip in new_ips if ip not in old_set),
        to_delete=tuple(ip for ip in old_ips if ip not in new_set),
    )

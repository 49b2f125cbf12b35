"""
cairn/reconcile/validation.py

Checks run before any remote action: the desired ClusterSpec must be
well-formed, and the transition from the observed state must be one the
planner can carry out safely.
"""

from __future__ import annotations

import ipaddress
from typing import List, Optional

from cairn.models.cluster import ClusterCurrent, ClusterSpec
from cairn.reconcile.differ import diff_hosts


class PlanValidationError(ValueError):
    """The desired state or the requested transition is not allowed."""


def _duplicates(ips: List[str]) -> List[str]:
    seen = set()
    dups = []
    for ip in ips:
        if ip in seen and ip not in dups:
            dups.append(ip)
        seen.add(ip)
    return dups


def validate_cluster_spec(cluster: ClusterSpec) -> None:
    """
    Raises:
        PlanValidationError: on an empty master list, malformed addresses,
            duplicate entries, or a host listed as both master and node.
    """
    if cluster.deletion_timestamp is not None:
        return

    masters = [ip.strip() for ip in cluster.masters.ip_list]
    nodes = [ip.strip() for ip in cluster.nodes.ip_list]
    if not masters:
        raise PlanValidationError(f"cluster {cluster.name!r} has no masters")

    for ip in masters + nodes:
        try:
            ipaddress.ip_address(ip)
        except ValueError as exc:
            raise PlanValidationError(f"invalid host address {ip!r}") from exc

    dups = _duplicates(masters) + _duplicates(nodes)
    if dups:
        raise PlanValidationError(f"duplicate host address(es): {', '.join(dups)}")

    overlap = [ip for ip in masters if ip in set(nodes)]
    if overlap:
        raise PlanValidationError(
            f"host(s) listed as both master and node: {', '.join(overlap)}"
        )


def validate_transition(
    desired: ClusterSpec, current: Optional[ClusterCurrent]
) -> None:
    """
    Reject transitions the planner cannot perform safely:

      - joining and deleting masters in the same pass,
      - deleting the bootstrap master (master0),
      - leaving the cluster with no masters.

    Raises:
        PlanValidationError
    """
    if desired.deletion_timestamp is not None or current is None:
        return

    masters = diff_hosts(current.masters, desired.masters.ip_list)
    if masters.to_join and masters.to_delete:
        raise PlanValidationError(
            "cannot add masters "
            f"({', '.join(masters.to_join)}) and remove masters "
            f"({', '.join(masters.to_delete)}) in one pass; "
            "scale up and down separately"
        )

    if masters.to_delete:
        remaining = [m for m in current.masters if m not in masters.to_delete]
        if not remaining:
            raise PlanValidationError("master count would reach zero")
        if current.masters and current.masters[0] in masters.to_delete:
            raise PlanValidationError(
                f"cannot delete master0 ({current.masters[0]}); it anchors the cluster"
            )

"""
cairn/reconcile/planner.py

Turns (desired, observed) into an ordered ActionPlan.

The intent is classified once, as a closed variant:

  - Teardown:  the desired spec carries a deletion marker; nothing else matters.
  - Bootstrap: no cluster is observed.
  - Reconcile: a cluster exists; host-set diffs plus a version comparison.

Planning is a pure function of its inputs; calling it twice with the same
arguments yields the same plan.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from cairn.models.cluster import ClusterCurrent, ClusterSpec, unique_in_order
from cairn.models.plan import (
    ActionName,
    ActionPlan,
    Bootstrap,
    Intent,
    PlannedAction,
    Reconcile,
    Teardown,
)
from cairn.reconcile.differ import diff_hosts
from cairn.runtime.version import normalize_version

logger = logging.getLogger(__name__)

BASELINE_ACTIONS = (ActionName.PULL_IMAGE, ActionName.MOUNT_ROOTFS)


def version_changed(observed: Optional[str], desired: Optional[str]) -> bool:
    """
    True only when both versions are known and differ. An unknown side never
    triggers an upgrade.
    """
    if not observed or not desired:
        return False
    return normalize_version(observed) != normalize_version(desired)


def outdated_hosts(
    current: ClusterCurrent, desired_version: Optional[str]
) -> List[str]:
    """
    Live hosts whose kubelet reports a known version other than
    `desired_version`. A half-finished upgrade leaves these behind even after
    master0 already runs the new version.
    """
    return [
        ip
        for ip in unique_in_order(current.masters + current.nodes)
        if version_changed(current.host_versions.get(ip), desired_version)
    ]


def classify_intent(
    desired: ClusterSpec,
    current: Optional[ClusterCurrent],
    desired_version: Optional[str] = None,
) -> Intent:
    if desired.deletion_timestamp is not None:
        return Teardown()
    if current is None:
        return Bootstrap()
    outdated = outdated_hosts(current, desired_version)
    return Reconcile(
        masters=diff_hosts(current.masters, desired.masters.ip_list),
        nodes=diff_hosts(current.nodes, desired.nodes.ip_list),
        version_changed=bool(outdated)
        or version_changed(current.version, desired_version),
        outdated=tuple(outdated),
    )


def _act(name: ActionName, hosts: Sequence[str] = ()) -> PlannedAction:
    return PlannedAction(name=name, hosts=tuple(hosts))


def build_plan(
    intent: Intent,
    desired: ClusterSpec,
    current: Optional[ClusterCurrent] = None,
) -> ActionPlan:
    """
    Build the ordered action list for an already-classified intent.

    Master actions always precede node actions; joins precede deletes.
    """
    if isinstance(intent, Teardown):
        return ActionPlan(
            intent=intent,
            actions=(
                _act(ActionName.RESET, desired.all_hosts()),
                _act(ActionName.UNMOUNT_ROOTFS, desired.all_hosts()),
            ),
        )

    if isinstance(intent, Bootstrap):
        masters = desired.masters.unique_ips()
        nodes = desired.nodes.unique_ips()
        return ActionPlan(
            intent=intent,
            actions=(
                _act(ActionName.PULL_IMAGE),
                _act(ActionName.MOUNT_ROOTFS, desired.all_hosts()),
                _act(ActionName.INIT_MASTER0, masters[:1]),
                _act(ActionName.JOIN_MASTERS, masters[1:]),
                _act(ActionName.JOIN_NODES, nodes),
                _act(ActionName.RUN_GUEST_HOOKS),
            ),
        )

    assert isinstance(intent, Reconcile)
    if intent.is_noop:
        return ActionPlan(intent=intent)

    joining = list(intent.masters.to_join) + list(intent.nodes.to_join)
    mount_hosts = desired.all_hosts() if intent.version_changed else joining
    actions = [
        _act(ActionName.PULL_IMAGE),
        _act(ActionName.MOUNT_ROOTFS, mount_hosts),
    ]

    if intent.version_changed:
        staying: List[str] = []
        if current is not None:
            staying = [
                ip
                for ip in unique_in_order(current.masters + current.nodes)
                if ip not in intent.masters.to_delete
                and ip not in intent.nodes.to_delete
            ]
        if intent.outdated:
            staying = [ip for ip in staying if ip in intent.outdated]
        actions.append(_act(ActionName.UPGRADE, staying))

    if intent.masters.to_join:
        actions.append(_act(ActionName.JOIN_MASTERS, list(intent.masters.to_join)))
    if intent.masters.to_delete:
        actions.append(_act(ActionName.DELETE_MASTERS, list(intent.masters.to_delete)))
    if intent.nodes.to_join:
        actions.append(_act(ActionName.JOIN_NODES, list(intent.nodes.to_join)))
    if intent.nodes.to_delete:
        actions.append(_act(ActionName.DELETE_NODES, list(intent.nodes.to_delete)))

    if tuple(a.name for a in actions) == BASELINE_ACTIONS:
        return ActionPlan(intent=intent)

    actions.append(_act(ActionName.RUN_GUEST_HOOKS))
    return ActionPlan(intent=intent, actions=tuple(actions))


def plan(
    desired: ClusterSpec,
    current: Optional[ClusterCurrent],
    desired_version: Optional[str] = None,
) -> ActionPlan:
    """Classify and build in one call."""
    intent = classify_intent(desired, current, desired_version)
    result = build_plan(intent, desired, current)
    logger.debug(
        "Planned %s: %s",
        intent.kind,
        ", ".join(str(a) for a in result.actions) or "<empty>",
    )
    return result

"""
cairn/models/plan.py

Plan-level types: the closed reconciliation intent, the action vocabulary,
and the ordered ActionPlan the pipeline executes.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Annotated


class ActionName(str, Enum):
    PULL_IMAGE = "PullImage"
    MOUNT_ROOTFS = "MountRootfs"
    INIT_MASTER0 = "InitMaster0"
    JOIN_MASTERS = "JoinMasters"
    JOIN_NODES = "JoinNodes"
    DELETE_MASTERS = "DeleteMasters"
    DELETE_NODES = "DeleteNodes"
    UPGRADE = "Upgrade"
    RUN_GUEST_HOOKS = "RunGuestHooks"
    RESET = "Reset"
    UNMOUNT_ROOTFS = "UnmountRootfs"


class PlannedAction(BaseModel):
    """One step of a plan: the action and the hosts it targets (may be empty)."""

    model_config = ConfigDict(frozen=True)

    name: ActionName
    hosts: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if not self.hosts:
            return self.name.value
        return f"{self.name.value}({', '.join(self.hosts)})"


class HostDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    to_join: Tuple[str, ...] = ()
    to_delete: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_join and not self.to_delete


class Bootstrap(BaseModel):
    """No cluster exists yet."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["bootstrap"] = "bootstrap"


class Teardown(BaseModel):
    """The desired spec carries a deletion marker."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["teardown"] = "teardown"


class Reconcile(BaseModel):
    """A cluster exists; converge host sets and, if needed, the version."""

    model_config = ConfigDict(frozen=True)
    kind: Literal["reconcile"] = "reconcile"
    masters: HostDiff = Field(default_factory=HostDiff)
    nodes: HostDiff = Field(default_factory=HostDiff)
    version_changed: bool = False
    # live hosts reporting a version other than the desired one
    outdated: Tuple[str, ...] = ()

    @property
    def is_noop(self) -> bool:
        if self.version_changed:
            return False
        return self.masters.is_empty and self.nodes.is_empty


Intent = Annotated[Union[Bootstrap, Teardown, Reconcile], Field(discriminator="kind")]


class ActionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: Intent
    actions: Tuple[PlannedAction, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def names(self) -> List[ActionName]:
        return [a.name for a in self.actions]

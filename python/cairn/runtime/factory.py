"""
cairn/runtime/factory.py

Maps a cluster's RuntimeFlavor to the LifecycleRuntime that drives it.
"""

from __future__ import annotations

from typing import Dict, Type

from cairn.models.cluster import RuntimeFlavor
from cairn.models.settings import CairnSettings
from cairn.remote.executor import RemoteExecutor
from cairn.runtime.base import LifecycleRuntime
from cairn.runtime.k0s.runtime import K0sRuntime
from cairn.runtime.kubeadm.runtime import KubeadmRuntime

RUNTIMES: Dict[RuntimeFlavor, Type[LifecycleRuntime]] = {
    RuntimeFlavor.KUBEADM: KubeadmRuntime,
    RuntimeFlavor.K0S: K0sRuntime,
}


def new_runtime(
    flavor: RuntimeFlavor, executor: RemoteExecutor, settings: CairnSettings
) -> LifecycleRuntime:
    try:
        runtime_cls = RUNTIMES[flavor]
    except KeyError:
        raise ValueError(f"unsupported runtime flavor {flavor!r}") from None
    return runtime_cls(executor, settings)

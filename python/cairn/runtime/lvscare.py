"""
cairn/runtime/lvscare.py

The node-local IPVS load balancer that lets workers reach the API server via
the VIP: a static pod manifest plus a one-shot IPVS rule for the join itself.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

import yaml

from cairn.remote.ssh import write_remote_file_cmd

LVSCARE_MANIFEST = "/etc/kubernetes/manifests/kube-lvscare.yaml"


def lvscare_static_pod(
    vip: str, masters: Sequence[str], image: str, port: int = 6443
) -> str:
    """Render the lvscare static pod pointing `vip:port` at every master."""
    args: List[str] = [
        "care",
        "--vs",
        f"{vip}:{port}",
        "--health-path",
        "/healthz",
        "--health-schem",
        "https",
    ]
    for master in masters:
        args += ["--rs", f"{master}:{port}"]

    pod: Dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "kube-lvscare", "namespace": "kube-system"},
        "spec": {
            "hostNetwork": True,
            "containers": [
                {
                    "name": "main",
                    "image": image,
                    "imagePullPolicy": "IfNotPresent",
                    "command": ["/usr/bin/lvscare"],
                    "args": args,
                    "securityContext": {"privileged": True},
                    "volumeMounts": [
                        {
                            "mountPath": "/lib/modules",
                            "name": "lib-modules",
                            "readOnly": True,
                        }
                    ],
                }
            ],
            "volumes": [
                {"name": "lib-modules", "hostPath": {"path": "/lib/modules"}}
            ],
        },
    }
    return yaml.safe_dump(pod, sort_keys=False)


def write_lvscare_cmd(
    vip: str, masters: Sequence[str], image: str, port: int = 6443
) -> str:
    return write_remote_file_cmd(
        lvscare_static_pod(vip, masters, image, port), LVSCARE_MANIFEST
    )


def ipvs_rule_cmd(vip: str, masters: Sequence[str], port: int = 6443) -> str:
    """One-shot IPVS rule so `kubeadm join` can reach the VIP before lvscare runs."""
    real_servers = " ".join(f"--rs {m}:{port}" for m in masters)
    return (
        f"seautil ipvs --vs {vip}:{port} {real_servers} "
        "--health-path /healthz --health-schem https --run-once"
    )

"""
cairn/runtime/k0s/commands.py

Remote command lines for the k0s flavor. k0s runs the whole control plane
from one binary; the registry is wired in through its generated config.
"""

from __future__ import annotations

import shlex

K0S_CONFIG_DIR = "/etc/k0s"
K0S_CONFIG = f"{K0S_CONFIG_DIR}/k0s.yaml"
K0S_ADMIN_CONF = "/var/lib/k0s/pki/admin.conf"
K0S_BINARY = "/usr/local/bin/k0s"
CONTROLLER_SERVICE = "/etc/systemd/system/k0scontroller.service"
WORKER_SERVICE = "/etc/systemd/system/k0sworker.service"
WORKER_TOKEN_FILE = f"{K0S_CONFIG_DIR}/worker-token"
CONTROLLER_TOKEN_FILE = f"{K0S_CONFIG_DIR}/controller-token"
CRI_SOCKET = "remote:/run/containerd/containerd.sock"
TOKEN_EXPIRY = "876000h"


def generate_config_cmd(registry_url: str) -> str:
    """Default k0s config with image pulls redirected to the private registry."""
    repo = shlex.quote(f'    repository: "{registry_url}"')
    return (
        f"mkdir -p {K0S_CONFIG_DIR} && k0s config create > {K0S_CONFIG} && "
        f"sed -i '/  images/ a\\'{repo} {K0S_CONFIG}"
    )


def install_controller_cmd(token_file: str = "") -> str:
    """Controllers also run a kubelet so they register as control-plane nodes."""
    token = f" --token-file {token_file}" if token_file else ""
    return (
        f"k0s install controller{token} --enable-worker -c {K0S_CONFIG} "
        f"--cri-socket {CRI_SOCKET}"
    )


def install_worker_cmd(token_file: str) -> str:
    return f"k0s install worker --cri-socket {CRI_SOCKET} --token-file {token_file}"


START = "k0s start"
STOP = "k0s stop"


def token_create_cmd(role: str) -> str:
    if role not in ("worker", "controller"):
        raise ValueError(f"unknown k0s token role {role!r}")
    return f"k0s token create --role={role} --expiry={TOKEN_EXPIRY}"


def install_binary_cmd(rootfs: str) -> str:
    src = shlex.quote(f"{rootfs}/bin/k0s")
    return f"cp -f {src} {K0S_BINARY} && chmod +x {K0S_BINARY}"


def kubectl(args: str) -> str:
    return f"k0s kubectl {args}"


def delete_node_cmd(node_name: str) -> str:
    return kubectl(f"delete node {shlex.quote(node_name)} --ignore-not-found")


def node_ready_cmd(node_name: str) -> str:
    return kubectl(
        f"get node {shlex.quote(node_name)} "
        "-o jsonpath='{.status.conditions[?(@.type==\"Ready\")].status}'"
    )


def drain_cmd(node_name: str) -> str:
    return kubectl(
        f"drain {shlex.quote(node_name)} --ignore-daemonsets "
        "--delete-emptydir-data --force --timeout=300s"
    )


def uncordon_cmd(node_name: str) -> str:
    return kubectl(f"uncordon {shlex.quote(node_name)}")


def clean_cmd(*, controller: bool) -> str:
    leave = "(k0s etcd leave || true) && " if controller else ""
    return (
        "if command -v k0s >/dev/null 2>&1; then "
        f"{leave}(k0s stop || true) && (k0s reset || true); fi && "
        f"rm -rf {K0S_CONFIG_DIR} /var/lib/k0s ~/.kube"
    )

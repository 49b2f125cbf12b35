"""
cairn/runtime/kubeadm/commands.py

Remote command lines for the kubeadm flavor.
"""

from __future__ import annotations

import shlex

from cairn.runtime.version import version_at_least

KUBERNETES_DIR = "/etc/kubernetes"
PKI_DIR = f"{KUBERNETES_DIR}/pki"
ADMIN_CONF = "admin.conf"
CONTROLLER_CONF = "controller-manager.conf"
SCHEDULER_CONF = "scheduler.conf"
KUBELET_CONF = "kubelet.conf"
REMOTE_ADMIN_CONF = f"{KUBERNETES_DIR}/{ADMIN_CONF}"
REMOTE_KUBELET_CONF = f"{KUBERNETES_DIR}/{KUBELET_CONF}"
REMOTE_KUBECTL = "/usr/bin/kubectl"

INIT_CONFIG_FILE = "kubeadm-config.yaml"
JOIN_CONFIG_FILE = "kubeadm-join-config.yaml"

DOCKER_CRI_SOCKET = "/var/run/dockershim.sock"
CONTAINERD_CRI_SOCKET = "/run/containerd/containerd.sock"

COPY_KUBECONFIG = (
    "rm -rf $HOME/.kube/config && mkdir -p $HOME/.kube && "
    f"cp {REMOTE_ADMIN_CONF} $HOME/.kube/config"
)

CLEAN_NODE = (
    "(if command -v kubeadm >/dev/null 2>&1; "
    "then kubeadm reset -f{verbosity}; fi) && "
    "(modprobe -r ipip || true) && "
    "rm -rf ~/.kube/ && rm -rf /etc/kubernetes/ && "
    "rm -rf /etc/systemd/system/kubelet.service.d && "
    "rm -rf /etc/systemd/system/kubelet.service && "
    "rm -rf /usr/bin/kube* && rm -rf /usr/bin/crictl && "
    "rm -rf /etc/cni && rm -rf /opt/cni && "
    "rm -rf /var/lib/etcd && rm -rf /var/etcd"
)

# kube-controller-manager and kube-scheduler of these releases talk to the
# local endpoint instead of the control plane endpoint.
LOCAL_ENDPOINT_VERSIONS = ("v1.19.1", "v1.19.2")


def verbosity_flag(verbosity: int) -> str:
    return f" -v {verbosity}" if verbosity else ""


def cri_socket(version: str) -> str:
    if version_at_least(version, "v1.20.0"):
        return CONTAINERD_CRI_SOCKET
    return DOCKER_CRI_SOCKET


def init_cmd(rootfs: str, version: str, verbosity: int) -> str:
    config = shlex.quote(f"{rootfs}/{INIT_CONFIG_FILE}")
    upload = (
        "--upload-certs"
        if version_at_least(version, "v1.15.0")
        else "--experimental-upload-certs"
    )
    return (
        f"kubeadm init --config={config} {upload}{verbosity_flag(verbosity)} "
        "--ignore-preflight-errors=SystemVerification"
    )


def join_cmd(rootfs: str, verbosity: int) -> str:
    config = shlex.quote(f"{rootfs}/{JOIN_CONFIG_FILE}")
    return (
        f"kubeadm join --config={config}{verbosity_flag(verbosity)} "
        "--ignore-preflight-errors=SystemVerification"
    )


def upload_certs_cmd(verbosity: int) -> str:
    return f"kubeadm init phase upload-certs --upload-certs{verbosity_flag(verbosity)}"


def token_create_cmd(verbosity: int) -> str:
    return f"kubeadm token create --print-join-command{verbosity_flag(verbosity)}"


def clean_cmd(verbosity: int) -> str:
    return CLEAN_NODE.format(verbosity=verbosity_flag(verbosity))


def delete_node_cmd(node_name: str) -> str:
    return f"kubectl delete node {shlex.quote(node_name)} --ignore-not-found"


def list_node_names_cmd() -> str:
    return "kubectl get nodes --no-headers -o custom-columns=NAME:.metadata.name"


def node_ready_cmd(node_name: str) -> str:
    return (
        f"kubectl get node {shlex.quote(node_name)} "
        "-o jsonpath='{.status.conditions[?(@.type==\"Ready\")].status}'"
    )


def drain_cmd(node_name: str) -> str:
    return (
        f"kubectl drain {shlex.quote(node_name)} --ignore-daemonsets "
        "--delete-emptydir-data --force --timeout=300s"
    )


def uncordon_cmd(node_name: str) -> str:
    return f"kubectl uncordon {shlex.quote(node_name)}"


def install_binaries_cmd(rootfs: str) -> str:
    """Replace kubeadm/kubelet/kubectl with the image's copies."""
    bin_dir = shlex.quote(f"{rootfs}/bin")
    return (
        f"cp -f {bin_dir}/kubeadm /usr/bin/kubeadm && "
        f"cp -f {bin_dir}/kubectl /usr/bin/kubectl && "
        "systemctl stop kubelet && "
        f"cp -f {bin_dir}/kubelet /usr/bin/kubelet"
    )


def upgrade_apply_cmd(version: str) -> str:
    return (
        f"kubeadm upgrade apply -y {shlex.quote(version)} "
        "--ignore-preflight-errors=all"
    )


def upgrade_node_cmd() -> str:
    return "kubeadm upgrade node"


RESTART_KUBELET = "systemctl daemon-reload && systemctl restart kubelet"


def replace_local_endpoint_cmd(ip: str) -> str:
    """Point controller-manager and scheduler kubeconfigs at this master's own API."""
    return " && ".join(
        f"sed -i 's/apiserver.cluster.local/{ip}/' {KUBERNETES_DIR}/{conf}"
        for conf in (CONTROLLER_CONF, SCHEDULER_CONF)
    )


def copy_static_file_cmd(static_dir: str, name: str, destination_dir: str) -> str:
    src = shlex.quote(f"{static_dir}/{name}")
    dst_dir = shlex.quote(destination_dir)
    return f"mkdir -p {dst_dir} && cp -f {src} {dst_dir}/"


# (file under <rootfs>/statics, destination directory) pushed to every master
MASTER_STATIC_FILES = (("audit-policy.yml", KUBERNETES_DIR),)


def retarget_hosts_entry_cmd(old_ip: str, new_ip: str, name: str) -> str:
    """Rewrite the `old_ip name` line of /etc/hosts to point at `new_ip`."""
    old = f"{old_ip} {name}".replace(".", r"\.")
    return f"sed -i 's/^{old}$/{new_ip} {name}/' /etc/hosts"

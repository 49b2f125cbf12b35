# cairn/models/settings.py

import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class CairnSettings(BaseSettings):
    """
    Process-wide knobs for cairn.
    Every field maps to an environment variable prefixed with `CAIRN_`,
    e.g. `CAIRN_WORK_DIR`, `CAIRN_TRANSFER_CONCURRENCY`.
    """

    model_config = SettingsConfigDict(env_prefix="CAIRN_")

    # Local state: one sub-directory per cluster holding the Clusterfile,
    # fetched admin kubeconfig, kubectl binary and generated PKI.
    work_dir: str = os.path.join(os.path.expanduser("~"), ".cairn")
    # Unpacked cluster images, one directory per image name.
    image_dir: str = "/var/lib/cairn/images"
    # Where each host receives the image rootfs.
    remote_data_dir: str = "/var/lib/cairn/data"

    ssh_ready_tries: int = 6
    ssh_backoff_seconds: float = 1.0
    ssh_connect_timeout: int = 15

    transfer_concurrency: int = 2

    upgrade_poll_interval: float = 10.0
    upgrade_poll_attempts: int = 30

    kubeadm_verbosity: int = 0

    lvscare_image: str = "fanux/lvscare:latest"
    vip: str = "10.103.97.2"
    apiserver_domain: str = "apiserver.cluster.local"
    apiserver_port: int = 6443

    registry_domain: str = "sea.hub"
    registry_port: int = 5000

    def cluster_dir(self, cluster_name: str) -> str:
        """Local state directory for one cluster."""
        return os.path.join(self.work_dir, cluster_name)

    def clusterfile_path(self, cluster_name: str) -> str:
        return os.path.join(self.cluster_dir(cluster_name), "Clusterfile")

    def kubeconfig_path(self, cluster_name: str) -> str:
        """Admin kubeconfig fetched back from master0 after init."""
        return os.path.join(self.cluster_dir(cluster_name), "admin.conf")

    def kubectl_path(self, cluster_name: str) -> str:
        return os.path.join(self.cluster_dir(cluster_name), "bin", "kubectl")

    def remote_rootfs(self, cluster_name: str) -> str:
        return f"{self.remote_data_dir.rstrip('/')}/{cluster_name}/rootfs"

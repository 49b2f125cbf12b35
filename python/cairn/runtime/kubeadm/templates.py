"""
cairn/runtime/kubeadm/templates.py

kubeadm init/join configuration rendered with jinja2.

The init configuration API version follows the image's Kubernetes version:

  - < v1.15         kubeadm.k8s.io/v1beta1
  - v1.15 .. v1.21  kubeadm.k8s.io/v1beta2
  - >= v1.22        kubeadm.k8s.io/v1beta3

A Clusterfile may name its own init template (`kubeadm_config_file`); it is
rendered with the same variables as the built-in one.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import jinja2
import yaml

from cairn.models.runtime import RuntimeContext
from cairn.runtime.kubeadm.commands import cri_socket
from cairn.runtime.version import version_at_least, with_v_prefix

logger = logging.getLogger(__name__)

_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)

_CLUSTER_CONFIGURATION = """\
apiVersion: {{ api_version }}
kind: ClusterConfiguration
kubernetesVersion: {{ version }}
controlPlaneEndpoint: "{{ apiserver }}:{{ apiserver_port }}"
imageRepository: {{ repo }}
networking:
  dnsDomain: {{ dns_domain }}
  podSubnet: {{ pod_cidr }}
  serviceSubnet: {{ svc_cidr }}
apiServer:
  certSANs:
  - 127.0.0.1
  - {{ apiserver }}
{% for master in masters %}
  - {{ master }}
{% endfor %}
{% for san in cert_sans %}
  - {{ san }}
{% endfor %}
  - {{ vip }}
  extraArgs:
    feature-gates: TTLAfterFinished=true,EphemeralContainers=true
    audit-policy-file: "/etc/kubernetes/audit-policy.yml"
    audit-log-path: "/var/log/kubernetes/audit.log"
    audit-log-format: json
    audit-log-maxbackup: '10'
    audit-log-maxsize: '100'
    audit-log-maxage: '7'
    enable-aggregator-routing: 'true'
  extraVolumes:
  - name: audit
    hostPath: /etc/kubernetes
    mountPath: /etc/kubernetes
    pathType: DirectoryOrCreate
  - name: audit-log
    hostPath: /var/log/kubernetes
    mountPath: /var/log/kubernetes
    pathType: DirectoryOrCreate
  - name: localtime
    hostPath: /etc/localtime
    mountPath: /etc/localtime
    readOnly: true
    pathType: File
controllerManager:
  extraArgs:
    feature-gates: TTLAfterFinished=true,EphemeralContainers=true
    experimental-cluster-signing-duration: 876000h
  extraVolumes:
  - hostPath: /etc/localtime
    mountPath: /etc/localtime
    name: localtime
    readOnly: true
    pathType: File
scheduler:
  extraArgs:
    feature-gates: TTLAfterFinished=true,EphemeralContainers=true
  extraVolumes:
  - hostPath: /etc/localtime
    mountPath: /etc/localtime
    name: localtime
    readOnly: true
    pathType: File
etcd:
  local:
    extraArgs:
      listen-metrics-urls: http://0.0.0.0:2381
"""

_INIT_CONFIGURATION = """\
apiVersion: {{ api_version }}
kind: InitConfiguration
localAPIEndpoint:
  advertiseAddress: {{ master0 }}
  bindPort: {{ apiserver_port }}
nodeRegistration:
  criSocket: {{ cri_socket }}
"""

_KUBE_PROXY_CONFIGURATION = """\
apiVersion: kubeproxy.config.k8s.io/v1alpha1
kind: KubeProxyConfiguration
mode: ipvs
ipvs:
  excludeCIDRs:
  - "{{ vip }}/32"
"""

_KUBELET_CONFIGURATION = """\
apiVersion: kubelet.config.k8s.io/v1beta1
kind: KubeletConfiguration
cgroupDriver: systemd
"""

INIT_TEMPLATE = "---\n".join(
    [
        _INIT_CONFIGURATION,
        _CLUSTER_CONFIGURATION,
        _KUBE_PROXY_CONFIGURATION,
        _KUBELET_CONFIGURATION,
    ]
)

JOIN_TEMPLATE = """\
apiVersion: {{ api_version }}
kind: JoinConfiguration
caCertPath: /etc/kubernetes/pki/ca.crt
discovery:
  bootstrapToken:
{% if master %}
    apiServerEndpoint: {{ master0 }}:{{ apiserver_port }}
{% else %}
    apiServerEndpoint: {{ vip }}:{{ apiserver_port }}
{% endif %}
    token: {{ token }}
    caCertHashes:
    - {{ discovery_ca_hash }}
  timeout: 5m0s
{% if master %}
controlPlane:
  localAPIEndpoint:
    advertiseAddress: {{ master }}
    bindPort: {{ apiserver_port }}
{% if certificate_key %}
  certificateKey: {{ certificate_key }}
{% endif %}
{% endif %}
nodeRegistration:
  criSocket: {{ cri_socket }}
"""


def kubeadm_api_version(version: str) -> str:
    if not version_at_least(version, "v1.15.0"):
        return "kubeadm.k8s.io/v1beta1"
    if not version_at_least(version, "v1.22.0"):
        return "kubeadm.k8s.io/v1beta2"
    return "kubeadm.k8s.io/v1beta3"


def join_api_version(version: str) -> str:
    """Join configuration is v1beta2 except on releases that dropped it."""
    if version_at_least(version, "v1.22.0"):
        return "kubeadm.k8s.io/v1beta3"
    return "kubeadm.k8s.io/v1beta2"


def init_template_vars(ctx: RuntimeContext, repo: str) -> Dict[str, Any]:
    version = with_v_prefix(ctx.version)
    return {
        "api_version": kubeadm_api_version(version),
        "version": version,
        "apiserver": ctx.apiserver_domain,
        "apiserver_port": ctx.apiserver_port,
        "repo": repo,
        "dns_domain": ctx.dns_domain,
        "pod_cidr": ctx.cluster.network.pod_cidr,
        "svc_cidr": ctx.cluster.network.svc_cidr,
        "master0": ctx.master0,
        "masters": list(ctx.masters),
        "cert_sans": list(ctx.cert_sans),
        "vip": ctx.vip,
        "cri_socket": cri_socket(version),
    }


def render_init_config(
    ctx: RuntimeContext, repo: str, template_text: Optional[str] = None
) -> str:
    """
    Render the init configuration; `template_text` overrides the built-in one.

    Raises:
        jinja2.TemplateError: if the template is malformed or uses an
            unknown variable.
    """
    template = _ENV.from_string(template_text or INIT_TEMPLATE)
    return template.render(**init_template_vars(ctx, repo))


def render_join_config(ctx: RuntimeContext, master: str = "") -> str:
    """
    Render a join configuration. With `master` set it joins that host as a
    control-plane member via master0; otherwise it joins a worker via the VIP.
    """
    if ctx.credentials is None:
        raise ValueError("join credentials have not been generated")
    version = with_v_prefix(ctx.version)
    template = _ENV.from_string(JOIN_TEMPLATE)
    return template.render(
        api_version=join_api_version(version),
        master0=ctx.master0,
        master=master,
        vip=ctx.vip,
        apiserver_port=ctx.apiserver_port,
        token=ctx.credentials.token,
        discovery_ca_hash=ctx.credentials.discovery_ca_hash,
        certificate_key=ctx.credentials.certificate_key,
        cri_socket=cri_socket(version),
    )


def cluster_settings_from_config(
    rendered: str,
) -> Optional[Tuple[str, List[str]]]:
    """
    Pull (dnsDomain, certSANs) out of a rendered init configuration.

    Returns:
        None if no ClusterConfiguration document can be decoded.
    """
    try:
        docs = [d for d in yaml.safe_load_all(rendered) if isinstance(d, dict)]
    except yaml.YAMLError as exc:
        logger.warning("Failed to decode kubeadm config: %s", exc)
        return None

    for doc in docs:
        if doc.get("kind") != "ClusterConfiguration":
            continue
        networking = doc.get("networking") or {}
        api_server = doc.get("apiServer") or {}
        dns_domain = str(networking.get("dnsDomain") or "cluster.local")
        sans = [str(s) for s in api_server.get("certSANs") or []]
        return dns_domain, sans
    return None

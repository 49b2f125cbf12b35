"""
cairn/runtime/kubeadm/pki.py

Cluster PKI generated locally with `cryptography` before `kubeadm init`, laid
out exactly as kubeadm expects under /etc/kubernetes/pki:

  - CAs: ca (kubernetes), front-proxy-ca, etcd/ca. Existing CAs are reused so
    a re-run never rotates cluster trust.
  - Leaf certificates for the API server, its kubelet/etcd clients, the
    front proxy and etcd server/peer/healthcheck.
  - The service-account signing key pair (sa.key / sa.pub), also reused.
  - Client kubeconfigs (admin, controller-manager, scheduler, kubelet).
"""

from __future__ import annotations

import base64
import ipaddress
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CERT_VALIDITY = timedelta(days=365 * 100)
KEY_SIZE = 2048

# (base name relative to the pki dir, common name)
CA_LIST: List[Tuple[str, str]] = [
    ("ca", "kubernetes"),
    ("front-proxy-ca", "front-proxy-ca"),
    ("etcd/ca", "etcd-ca"),
]

# Files a joining master needs; kubeadm derives that host's leaf certs from them.
SHARED_CA_FILES: List[str] = [
    "ca.crt",
    "ca.key",
    "sa.key",
    "sa.pub",
    "front-proxy-ca.crt",
    "front-proxy-ca.key",
    "etcd/ca.crt",
    "etcd/ca.key",
]


class CertSpec(BaseModel):
    base_name: str
    ca: str
    common_name: str
    organization: List[str] = Field(default_factory=list)
    server: bool = False
    client: bool = False
    dns_names: List[str] = Field(default_factory=list)
    ips: List[str] = Field(default_factory=list)


def _split_alt_names(names: Sequence[str]) -> Tuple[List[str], List[str]]:
    dns: List[str] = []
    ips: List[str] = []
    for name in names:
        try:
            ips.append(str(ipaddress.ip_address(name)))
        except ValueError:
            dns.append(name)
    return dns, ips


def _dedup(items: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(i for i in items if i))


def first_service_ip(svc_cidr: str) -> str:
    network = ipaddress.ip_network(svc_cidr, strict=False)
    return str(network.network_address + 1)


def apiserver_alt_names(
    sans: Sequence[str],
    *,
    svc_cidr: str,
    dns_domain: str,
    node_name: str,
    node_ip: str,
) -> Tuple[List[str], List[str]]:
    """
    (DNS names, IPs) for the API server certificate: the in-cluster service
    names, loopback, the first service IP, every configured SAN and the node.
    """
    san_dns, san_ips = _split_alt_names(sans)
    dns = _dedup(
        [
            "localhost",
            "kubernetes",
            "kubernetes.default",
            "kubernetes.default.svc",
            f"kubernetes.default.svc.{dns_domain}",
            node_name,
        ]
        + san_dns
    )
    ips = _dedup(["127.0.0.1", first_service_ip(svc_cidr)] + san_ips + [node_ip])
    return dns, ips


def leaf_cert_specs(
    sans: Sequence[str],
    *,
    svc_cidr: str,
    dns_domain: str,
    node_name: str,
    node_ip: str,
) -> List[CertSpec]:
    api_dns, api_ips = apiserver_alt_names(
        sans,
        svc_cidr=svc_cidr,
        dns_domain=dns_domain,
        node_name=node_name,
        node_ip=node_ip,
    )
    etcd_dns = _dedup(["localhost", node_name])
    etcd_ips = _dedup(["127.0.0.1", node_ip, "::1"])
    return [
        CertSpec(
            base_name="apiserver",
            ca="ca",
            common_name="kube-apiserver",
            server=True,
            dns_names=api_dns,
            ips=api_ips,
        ),
        CertSpec(
            base_name="apiserver-kubelet-client",
            ca="ca",
            common_name="kube-apiserver-kubelet-client",
            organization=["system:masters"],
            client=True,
        ),
        CertSpec(
            base_name="front-proxy-client",
            ca="front-proxy-ca",
            common_name="front-proxy-client",
            client=True,
        ),
        CertSpec(
            base_name="apiserver-etcd-client",
            ca="etcd/ca",
            common_name="kube-apiserver-etcd-client",
            organization=["system:masters"],
            client=True,
        ),
        CertSpec(
            base_name="etcd/server",
            ca="etcd/ca",
            common_name=node_name,
            server=True,
            client=True,
            dns_names=etcd_dns,
            ips=etcd_ips,
        ),
        CertSpec(
            base_name="etcd/peer",
            ca="etcd/ca",
            common_name=node_name,
            server=True,
            client=True,
            dns_names=etcd_dns,
            ips=etcd_ips,
        ),
        CertSpec(
            base_name="etcd/healthcheck-client",
            ca="etcd/ca",
            common_name="kube-etcd-healthcheck-client",
            organization=["system:masters"],
            client=True,
        ),
    ]


# ----------------------------------------------------------------------
# Primitives
# ----------------------------------------------------------------------


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _name(common_name: str, organization: Sequence[str] = ()) -> x509.Name:
    attrs = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, o) for o in organization]
    attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    return x509.Name(attrs)


def _key_usage(*, ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=ca,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def new_ca(common_name: str) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    key = _new_key()
    name = _name(common_name)
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(ca=True), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .sign(key, hashes.SHA256())
    )
    return cert, key


def new_signed_cert(
    spec: CertSpec, ca_cert: x509.Certificate, ca_key: rsa.RSAPrivateKey
) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    key = _new_key()
    now = datetime.now(timezone.utc)
    usages = []
    if spec.server:
        usages.append(ExtendedKeyUsageOID.SERVER_AUTH)
    if spec.client:
        usages.append(ExtendedKeyUsageOID.CLIENT_AUTH)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(spec.common_name, spec.organization))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_key_usage(ca=False), critical=True)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    if usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)

    alt_names: List[x509.GeneralName] = [x509.DNSName(d) for d in spec.dns_names]
    alt_names += [x509.IPAddress(ipaddress.ip_address(i)) for i in spec.ips]
    if alt_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(alt_names), critical=False
        )
    return builder.sign(ca_key, hashes.SHA256()), key


def cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def _write(path: str, data: bytes, mode: int = 0o644) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


def write_cert_and_key(
    cert_path: str,
    base_name: str,
    cert: x509.Certificate,
    key: rsa.RSAPrivateKey,
) -> None:
    _write(os.path.join(cert_path, f"{base_name}.crt"), cert_pem(cert))
    _write(os.path.join(cert_path, f"{base_name}.key"), key_pem(key), 0o600)


def load_cert_and_key(
    cert_path: str, base_name: str
) -> Optional[Tuple[x509.Certificate, rsa.RSAPrivateKey]]:
    crt = os.path.join(cert_path, f"{base_name}.crt")
    key = os.path.join(cert_path, f"{base_name}.key")
    if not (os.path.isfile(crt) and os.path.isfile(key)):
        return None
    with open(crt, "rb") as f:
        cert = x509.load_pem_x509_certificate(f.read())
    with open(key, "rb") as f:
        private_key = serialization.load_pem_private_key(f.read(), password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError(f"{key} is not an RSA private key")
    return cert, private_key


# ----------------------------------------------------------------------
# Cluster PKI
# ----------------------------------------------------------------------


def ensure_service_account_keys(cert_path: str) -> None:
    sa_key = os.path.join(cert_path, "sa.key")
    if os.path.isfile(sa_key):
        logger.debug("sa.key and sa.pub already exist")
        return
    key = _new_key()
    _write(sa_key, key_pem(key), 0o600)
    _write(
        os.path.join(cert_path, "sa.pub"),
        key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ),
    )


def ensure_cas(
    cert_path: str,
) -> Dict[str, Tuple[x509.Certificate, rsa.RSAPrivateKey]]:
    cas: Dict[str, Tuple[x509.Certificate, rsa.RSAPrivateKey]] = {}
    for base_name, common_name in CA_LIST:
        existing = load_cert_and_key(cert_path, base_name)
        if existing is not None:
            logger.debug("Reusing CA %s", base_name)
            cas[base_name] = existing
            continue
        cert, key = new_ca(common_name)
        write_cert_and_key(cert_path, base_name, cert, key)
        cas[base_name] = (cert, key)
    return cas


def generate_cluster_pki(
    cert_path: str,
    sans: Sequence[str],
    *,
    node_name: str,
    node_ip: str,
    svc_cidr: str,
    dns_domain: str,
) -> None:
    """
    Create (or complete) the PKI tree under `cert_path` for master0.
    Leaf certificates are always re-issued so SAN changes take effect.
    """
    cas = ensure_cas(cert_path)
    ensure_service_account_keys(cert_path)
    specs = leaf_cert_specs(
        sans,
        svc_cidr=svc_cidr,
        dns_domain=dns_domain,
        node_name=node_name,
        node_ip=node_ip,
    )
    for spec in specs:
        ca_cert, ca_key = cas[spec.ca]
        cert, key = new_signed_cert(spec, ca_cert, ca_key)
        write_cert_and_key(cert_path, spec.base_name, cert, key)
    logger.info("Generated cluster PKI in %s", cert_path)


# ----------------------------------------------------------------------
# Kubeconfigs
# ----------------------------------------------------------------------

KUBECONFIG_USERS: Dict[str, Tuple[str, List[str]]] = {
    "admin.conf": ("kubernetes-admin", ["system:masters"]),
    "controller-manager.conf": ("system:kube-controller-manager", []),
    "scheduler.conf": ("system:kube-scheduler", []),
}


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def render_kubeconfig(
    ca_cert: x509.Certificate,
    client_cert: x509.Certificate,
    client_key: rsa.RSAPrivateKey,
    *,
    user: str,
    server: str,
    cluster_name: str = "kubernetes",
) -> str:
    context = f"{user}@{cluster_name}"
    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": cluster_name,
                "cluster": {
                    "certificate-authority-data": _b64(cert_pem(ca_cert)),
                    "server": server,
                },
            }
        ],
        "contexts": [
            {"name": context, "context": {"cluster": cluster_name, "user": user}}
        ],
        "current-context": context,
        "users": [
            {
                "name": user,
                "user": {
                    "client-certificate-data": _b64(cert_pem(client_cert)),
                    "client-key-data": _b64(key_pem(client_key)),
                },
            }
        ],
        "preferences": {},
    }
    return yaml.safe_dump(config, sort_keys=False)


def write_kubeconfigs(
    out_dir: str, cert_path: str, *, node_name: str, server: str
) -> List[str]:
    """
    Write admin, controller-manager, scheduler and kubelet kubeconfigs to
    `out_dir`, signed by the cluster CA in `cert_path`.

    Returns:
        The file names written.
    """
    ca = load_cert_and_key(cert_path, "ca")
    if ca is None:
        raise FileNotFoundError(f"cluster CA not found in {cert_path}")
    ca_cert, ca_key = ca

    users = dict(KUBECONFIG_USERS)
    users["kubelet.conf"] = (f"system:node:{node_name}", ["system:nodes"])

    written: List[str] = []
    for file_name, (user, orgs) in users.items():
        spec = CertSpec(
            base_name=file_name,
            ca="ca",
            common_name=user,
            organization=orgs,
            client=True,
        )
        cert, key = new_signed_cert(spec, ca_cert, ca_key)
        content = render_kubeconfig(ca_cert, cert, key, user=user, server=server)
        _write(os.path.join(out_dir, file_name), content.encode("utf-8"), 0o600)
        written.append(file_name)
    return written

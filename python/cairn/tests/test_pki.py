import base64
import ipaddress
import os

import pytest
import yaml
from cryptography import x509
from cryptography.x509.oid import NameOID

from cairn.runtime.kubeadm.pki import (
    SHARED_CA_FILES,
    apiserver_alt_names,
    first_service_ip,
    generate_cluster_pki,
    load_cert_and_key,
    write_kubeconfigs,
)


def _generate(cert_path, sans=("apiserver.cluster.local", "10.0.0.1")):
    generate_cluster_pki(
        cert_path,
        list(sans),
        node_name="master-0",
        node_ip="10.0.0.1",
        svc_cidr="10.96.0.0/22",
        dns_domain="cluster.local",
    )


def _cn(name: x509.Name) -> str:
    return name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def test_first_service_ip():
    assert first_service_ip("10.96.0.0/22") == "10.96.0.1"


def test_apiserver_alt_names_split_and_dedup():
    dns, ips = apiserver_alt_names(
        ["apiserver.cluster.local", "10.0.0.1", "10.0.0.1", "lb.example.com"],
        svc_cidr="10.96.0.0/22",
        dns_domain="corp.local",
        node_name="master-0",
        node_ip="10.0.0.1",
    )
    assert "kubernetes.default.svc.corp.local" in dns
    assert "lb.example.com" in dns
    assert "master-0" in dns
    assert ips == ["127.0.0.1", "10.96.0.1", "10.0.0.1"]


def test_generate_cluster_pki_layout(tmp_path):
    cert_path = str(tmp_path / "pki")
    _generate(cert_path)

    for name in SHARED_CA_FILES:
        assert os.path.isfile(os.path.join(cert_path, name)), name
    for leaf in ("apiserver", "etcd/server", "etcd/peer", "front-proxy-client"):
        assert os.path.isfile(os.path.join(cert_path, f"{leaf}.crt"))
    assert oct(os.stat(os.path.join(cert_path, "ca.key")).st_mode & 0o777) == "0o600"


def test_apiserver_certificate_carries_sans(tmp_path):
    cert_path = str(tmp_path / "pki")
    _generate(cert_path, sans=("apiserver.cluster.local", "10.103.97.2"))
    loaded = load_cert_and_key(cert_path, "apiserver")
    assert loaded is not None
    cert, _ = loaded

    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert "apiserver.cluster.local" in san.get_values_for_type(x509.DNSName)
    ips = san.get_values_for_type(x509.IPAddress)
    assert ipaddress.ip_address("10.103.97.2") in ips
    assert ipaddress.ip_address("10.96.0.1") in ips
    assert _cn(cert.issuer) == "kubernetes"


def test_etcd_certificates_are_signed_by_etcd_ca(tmp_path):
    cert_path = str(tmp_path / "pki")
    _generate(cert_path)
    for leaf in ("etcd/server", "etcd/peer", "apiserver-etcd-client"):
        loaded = load_cert_and_key(cert_path, leaf)
        assert loaded is not None
        assert _cn(loaded[0].issuer) == "etcd-ca"
    proxy = load_cert_and_key(cert_path, "front-proxy-client")
    assert proxy is not None
    assert _cn(proxy[0].issuer) == "front-proxy-ca"


def test_rerun_keeps_cas_and_service_account_key(tmp_path):
    cert_path = str(tmp_path / "pki")
    _generate(cert_path)
    ca_before = load_cert_and_key(cert_path, "ca")
    assert ca_before is not None
    with open(os.path.join(cert_path, "sa.key"), "rb") as f:
        sa_before = f.read()
    api_before = load_cert_and_key(cert_path, "apiserver")
    assert api_before is not None

    _generate(cert_path, sans=("apiserver.cluster.local", "10.0.0.9"))

    ca_after = load_cert_and_key(cert_path, "ca")
    assert ca_after is not None
    assert ca_after[0].serial_number == ca_before[0].serial_number
    with open(os.path.join(cert_path, "sa.key"), "rb") as f:
        assert f.read() == sa_before
    api_after = load_cert_and_key(cert_path, "apiserver")
    assert api_after is not None
    assert api_after[0].serial_number != api_before[0].serial_number


def test_write_kubeconfigs(tmp_path):
    cert_path = str(tmp_path / "pki")
    out_dir = str(tmp_path / "kubernetes")
    _generate(cert_path)

    written = write_kubeconfigs(
        out_dir,
        cert_path,
        node_name="master-0",
        server="https://apiserver.cluster.local:6443",
    )
    assert sorted(written) == [
        "admin.conf",
        "controller-manager.conf",
        "kubelet.conf",
        "scheduler.conf",
    ]

    with open(os.path.join(out_dir, "kubelet.conf"), "r", encoding="utf-8") as f:
        config = yaml.safe_load(f.read())
    assert config["clusters"][0]["cluster"]["server"] == (
        "https://apiserver.cluster.local:6443"
    )
    assert config["current-context"] == "system:node:master-0@kubernetes"
    pem = base64.b64decode(config["users"][0]["user"]["client-certificate-data"])
    client = x509.load_pem_x509_certificate(pem)
    assert _cn(client.subject) == "system:node:master-0"
    orgs = client.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    assert [o.value for o in orgs] == ["system:nodes"]


def test_write_kubeconfigs_requires_ca(tmp_path):
    with pytest.raises(FileNotFoundError):
        write_kubeconfigs(
            str(tmp_path / "out"),
            str(tmp_path / "pki"),
            node_name="master-0",
            server="https://x:6443",
        )

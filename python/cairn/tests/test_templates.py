import jinja2
import pytest
import yaml

from cairn.models.runtime import ImageMetadata, JoinCredentials
from cairn.runtime.kubeadm.templates import (
    cluster_settings_from_config,
    join_api_version,
    kubeadm_api_version,
    render_init_config,
    render_join_config,
)
from cairn.tests.fakes import make_cluster, make_context, make_settings


@pytest.mark.parametrize(
    "version,expected",
    [
        ("v1.14.3", "kubeadm.k8s.io/v1beta1"),
        ("v1.15.0", "kubeadm.k8s.io/v1beta2"),
        ("1.21.9", "kubeadm.k8s.io/v1beta2"),
        ("v1.22.0", "kubeadm.k8s.io/v1beta3"),
    ],
)
def test_kubeadm_api_version(version, expected):
    assert kubeadm_api_version(version) == expected


def test_join_api_version():
    assert join_api_version("v1.19.8") == "kubeadm.k8s.io/v1beta2"
    assert join_api_version("v1.24.1") == "kubeadm.k8s.io/v1beta3"


def _ctx(tmp_path, version="v1.22.15", **cluster_overrides):
    settings = make_settings(tmp_path)
    cluster = make_cluster(
        masters=["10.0.0.1", "10.0.0.2"], nodes=["10.0.0.3"], **cluster_overrides
    )
    return make_context(settings, cluster, version=version)


def test_render_init_config(tmp_path):
    ctx = _ctx(tmp_path, cert_sans=["k8s.example.com"])
    docs = list(yaml.safe_load_all(render_init_config(ctx, "sea.hub:5000/library")))
    kinds = [d["kind"] for d in docs]
    assert kinds == [
        "InitConfiguration",
        "ClusterConfiguration",
        "KubeProxyConfiguration",
        "KubeletConfiguration",
    ]

    init, cluster = docs[0], docs[1]
    assert init["apiVersion"] == "kubeadm.k8s.io/v1beta3"
    assert init["localAPIEndpoint"]["advertiseAddress"] == "10.0.0.1"
    assert init["nodeRegistration"]["criSocket"] == "/run/containerd/containerd.sock"
    assert cluster["kubernetesVersion"] == "v1.22.15"
    assert cluster["imageRepository"] == "sea.hub:5000/library"
    assert cluster["controlPlaneEndpoint"] == "apiserver.cluster.local:6443"
    assert cluster["networking"]["serviceSubnet"] == "10.96.0.0/22"
    assert cluster["apiServer"]["certSANs"] == [
        "127.0.0.1",
        "apiserver.cluster.local",
        "10.0.0.1",
        "10.0.0.2",
        "k8s.example.com",
        "10.103.97.2",
    ]
    assert docs[2]["ipvs"]["excludeCIDRs"] == ["10.103.97.2/32"]


def test_render_init_config_old_release_uses_dockershim(tmp_path):
    ctx = _ctx(tmp_path, version="1.19.8")
    init = next(yaml.safe_load_all(render_init_config(ctx, "repo")))
    assert init["apiVersion"] == "kubeadm.k8s.io/v1beta2"
    assert init["nodeRegistration"]["criSocket"] == "/var/run/dockershim.sock"


def test_render_custom_template(tmp_path):
    ctx = _ctx(tmp_path)
    out = render_init_config(ctx, "repo", "kind: Custom\nmaster: {{ master0 }}\n")
    assert out == "kind: Custom\nmaster: 10.0.0.1\n"


def test_render_custom_template_rejects_unknown_variable(tmp_path):
    ctx = _ctx(tmp_path)
    with pytest.raises(jinja2.UndefinedError):
        render_init_config(ctx, "repo", "value: {{ nope }}\n")


def test_render_join_config_for_master_and_worker(tmp_path):
    ctx = _ctx(tmp_path).with_credentials(
        JoinCredentials(
            token="abc.def", discovery_ca_hash="sha256:ff", certificate_key="k" * 64
        )
    )
    master = yaml.safe_load(render_join_config(ctx, master="10.0.0.2"))
    assert master["discovery"]["bootstrapToken"]["apiServerEndpoint"] == (
        "10.0.0.1:6443"
    )
    assert master["discovery"]["bootstrapToken"]["caCertHashes"] == ["sha256:ff"]
    assert master["controlPlane"]["localAPIEndpoint"]["advertiseAddress"] == (
        "10.0.0.2"
    )
    assert master["controlPlane"]["certificateKey"] == "k" * 64

    worker = yaml.safe_load(render_join_config(ctx))
    assert worker["discovery"]["bootstrapToken"]["apiServerEndpoint"] == (
        "10.103.97.2:6443"
    )
    assert worker["discovery"]["bootstrapToken"]["token"] == "abc.def"
    assert "controlPlane" not in worker


def test_render_join_config_requires_credentials(tmp_path):
    with pytest.raises(ValueError, match="credentials"):
        render_join_config(_ctx(tmp_path))


def test_cluster_settings_from_config(tmp_path):
    rendered = render_init_config(_ctx(tmp_path), "repo")
    settings = cluster_settings_from_config(rendered)
    assert settings is not None
    dns_domain, sans = settings
    assert dns_domain == "cluster.local"
    assert "10.0.0.2" in sans


def test_cluster_settings_from_config_without_cluster_document():
    assert cluster_settings_from_config("kind: InitConfiguration\n") is None
    assert cluster_settings_from_config("a: [b\n") is None


def test_metadata_alias_is_accepted():
    meta = ImageMetadata.model_validate(
        {"version": "v1.22.15", "clusterRuntime": "kubernetes", "cmds": ["kubectl"]}
    )
    assert meta.cluster_runtime == "kubernetes"

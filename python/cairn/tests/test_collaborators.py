import json

import pytest

from cairn.collaborators import (
    ImageNotFoundError,
    KubectlStateProbe,
    LocalImageStore,
    RootfsGuestRunner,
    ScpRootfsDistributor,
    StaticProvisioner,
    image_dir_name,
    parse_nodes_json,
    truncate_to_count,
)
from cairn.models.cluster import Hosts
from cairn.models.runtime import ImageMetadata
from cairn.reconcile.validation import PlanValidationError
from cairn.tests.fakes import (
    RecordingExecutor,
    decode_written_file,
    make_cluster,
    make_context,
    make_settings,
)


def _node(name, ip, created, master=False, version="v1.22.15"):
    labels = {"kubernetes.io/hostname": name}
    if master:
        labels["node-role.kubernetes.io/control-plane"] = ""
    return {
        "metadata": {"name": name, "creationTimestamp": created, "labels": labels},
        "status": {
            "addresses": [
                {"type": "Hostname", "address": name},
                {"type": "InternalIP", "address": ip},
            ],
            "nodeInfo": {"kubeletVersion": version},
        },
    }


def test_parse_nodes_json_orders_masters_by_age():
    raw = json.dumps(
        {
            "items": [
                _node("m2", "10.0.0.2", "2024-01-02T00:00:00Z", master=True),
                _node("w1", "10.0.0.11", "2024-01-03T00:00:00Z"),
                _node(
                    "m1",
                    "10.0.0.1",
                    "2024-01-01T00:00:00Z",
                    master=True,
                    version="v1.21.3",
                ),
            ]
        }
    )
    current = parse_nodes_json(raw)
    assert current.masters == ["10.0.0.1", "10.0.0.2"]
    assert current.nodes == ["10.0.0.11"]
    assert current.version == "v1.21.3"


def test_parse_nodes_json_records_every_kubelet_version():
    raw = json.dumps(
        {
            "items": [
                _node(
                    "m1",
                    "10.0.0.1",
                    "2024-01-01T00:00:00Z",
                    master=True,
                    version="v1.23.0",
                ),
                _node("w1", "10.0.0.11", "2024-01-02T00:00:00Z"),
            ]
        }
    )
    current = parse_nodes_json(raw)
    assert current.version == "v1.23.0"
    assert current.host_versions == {"10.0.0.1": "v1.23.0", "10.0.0.11": "v1.22.15"}


def test_parse_nodes_json_accepts_legacy_master_label_and_skips_no_ip():
    legacy = _node("m1", "10.0.0.1", "2024-01-01T00:00:00Z")
    legacy["metadata"]["labels"]["node-role.kubernetes.io/master"] = ""
    no_ip = _node("ghost", "", "2024-01-02T00:00:00Z")
    no_ip["status"]["addresses"] = []
    current = parse_nodes_json(json.dumps({"items": [legacy, no_ip]}))
    assert current.masters == ["10.0.0.1"]
    assert current.nodes == []


def test_parse_nodes_json_empty_list():
    current = parse_nodes_json('{"items": []}')
    assert current.masters == [] and current.version is None


def test_truncate_to_count():
    hosts = Hosts(count="2", ip_list=["a", "b", "c", "a"])
    assert truncate_to_count("nodes", hosts).ip_list == ["a", "b"]
    assert truncate_to_count("nodes", Hosts(ip_list=["a", "a"])).ip_list == ["a"]
    with pytest.raises(PlanValidationError, match="masters: count 4"):
        truncate_to_count("masters", Hosts(count="4", ip_list=["a", "b"]))


@pytest.mark.asyncio
async def test_static_provisioner_applies_counts():
    cluster = make_cluster(
        masters=["10.0.0.1", "10.0.0.2", "10.0.0.3"], nodes=["10.0.0.11"]
    )
    cluster = cluster.model_copy(
        update={"masters": Hosts(count="1", ip_list=cluster.masters.ip_list)}
    )
    provisioned = await StaticProvisioner().provision(cluster)
    assert provisioned.masters.ip_list == ["10.0.0.1"]
    assert provisioned.nodes.ip_list == ["10.0.0.11"]


def test_image_dir_name():
    assert image_dir_name("registry.io/kubernetes:v1.22.15") == (
        "registry.io_kubernetes_v1.22.15"
    )


@pytest.mark.asyncio
async def test_local_image_store(tmp_path):
    settings = make_settings(tmp_path)
    store = LocalImageStore(settings)
    with pytest.raises(ImageNotFoundError):
        await store.pull_if_not_exist("kubernetes:v1.22.15")
    assert await store.load_metadata("kubernetes:v1.22.15") is None

    root = tmp_path / "images" / "kubernetes_v1.22.15"
    root.mkdir(parents=True)
    (root / "Metadata").write_text(
        json.dumps({"version": "v1.22.15", "arch": "arm64", "cmds": ["kubectl"]})
    )
    assert await store.pull_if_not_exist("kubernetes:v1.22.15") == str(root)
    metadata = await store.load_metadata("kubernetes:v1.22.15")
    assert metadata == ImageMetadata(
        version="v1.22.15", arch="arm64", cmds=["kubectl"]
    )


@pytest.mark.asyncio
async def test_local_image_store_rejects_bad_metadata(tmp_path):
    settings = make_settings(tmp_path)
    root = tmp_path / "images" / "broken"
    root.mkdir(parents=True)
    (root / "Metadata").write_text("{not json")
    with pytest.raises(ValueError, match="failed to load image metadata"):
        await LocalImageStore(settings).load_metadata("broken")


@pytest.mark.asyncio
async def test_rootfs_distributor_copies_and_marks(tmp_path):
    settings = make_settings(tmp_path)
    image_root = tmp_path / "image"
    (image_root / "scripts").mkdir(parents=True)
    (image_root / "scripts" / "init.sh").write_text("#!/bin/bash\n")
    executor = RecordingExecutor(settings)
    cluster = make_cluster(masters=["10.0.0.1"], nodes=["10.0.0.11"])

    await ScpRootfsDistributor(executor, settings).mount(
        cluster, str(image_root), ["10.0.0.1", "10.0.0.11"]
    )

    rootfs = settings.remote_rootfs("demo")
    assert executor.ready_checks == [["10.0.0.1", "10.0.0.11"]]
    for host in ("10.0.0.1", "10.0.0.11"):
        assert executor.index_of(host, f"<copy {rootfs}>") < executor.index_of(
            host, "bash init.sh"
        )
        marker = executor.commands_on(host)[-1]
        assert marker.endswith(f"{rootfs}/.cairn-image")
        assert decode_written_file(marker) == "kubernetes:v1.22.15\n"


@pytest.mark.asyncio
async def test_rootfs_distributor_skips_host_with_same_image(tmp_path):
    settings = make_settings(tmp_path)
    executor = RecordingExecutor(
        settings, responses={".cairn-image": "kubernetes:v1.22.15\n"}
    )
    await ScpRootfsDistributor(executor, settings).mount(
        make_cluster(), str(tmp_path), ["10.0.0.1"]
    )
    assert executor.copies == []


@pytest.mark.asyncio
async def test_rootfs_distributor_unmount(tmp_path):
    settings = make_settings(tmp_path)
    executor = RecordingExecutor(settings)
    await ScpRootfsDistributor(executor, settings).unmount(
        make_cluster(), ["10.0.0.1"]
    )
    assert executor.commands_on("10.0.0.1")[-1] == (
        f"rm -rf {settings.remote_rootfs('demo')}"
    )


@pytest.mark.asyncio
async def test_guest_runner_runs_image_commands_on_master0(tmp_path):
    settings = make_settings(tmp_path)
    executor = RecordingExecutor(settings)
    ctx = make_context(
        settings, make_cluster(masters=["10.0.0.1", "10.0.0.2"])
    ).model_copy(
        update={
            "metadata": ImageMetadata(
                version="v1.22.15", cmds=["kubectl apply -f manifests/calico.yaml"]
            )
        }
    )
    await RootfsGuestRunner(executor).run(ctx)
    assert executor.calls == [
        (
            "10.0.0.1",
            f"cd {ctx.rootfs} && kubectl apply -f manifests/calico.yaml",
        )
    ]


@pytest.mark.asyncio
async def test_probe_without_kubeconfig_reports_no_cluster(tmp_path):
    probe = KubectlStateProbe(make_settings(tmp_path))
    assert await probe.probe(make_cluster()) is None


@pytest.mark.asyncio
async def test_probe_reads_nodes_with_fetched_kubeconfig(tmp_path, monkeypatch):
    settings = make_settings(tmp_path)
    kubeconfig = tmp_path / "work" / "demo" / "admin.conf"
    kubeconfig.parent.mkdir(parents=True)
    kubeconfig.write_text("apiVersion: v1\n")
    seen = []

    async def fake_run(argv, **kwargs):
        seen.append(argv)
        return json.dumps(
            {"items": [_node("m1", "10.0.0.1", "2024-01-01T00:00:00Z", master=True)]}
        )

    monkeypatch.setattr("cairn.collaborators.run_command", fake_run)
    current = await KubectlStateProbe(settings).probe(make_cluster())

    assert current is not None and current.masters == ["10.0.0.1"]
    assert seen[0][0] == "kubectl"
    assert seen[0][1:3] == ["--kubeconfig", str(kubeconfig)]

import sys

import pytest

from cairn.cli import cairnctl
from cairn.models.cluster import ClusterSpec


class StubApplier:
    calls = []

    async def apply(self, desired):
        self.calls.append(("apply", desired.name))
        return desired

    async def scale(self, name, *, masters=None, nodes=None):
        self.calls.append(("scale", name, masters, nodes))
        return ClusterSpec(name=name, image="kubernetes:v1.22.15")

    async def delete(self, name):
        self.calls.append(("delete", name))


@pytest.fixture
def stub(monkeypatch):
    StubApplier.calls = []
    monkeypatch.setattr(cairnctl, "_new_applier", StubApplier)
    return StubApplier


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["cairnctl", *argv])
    cairnctl.main()


def test_apply_reads_clusterfile(stub, monkeypatch, tmp_path, capsys):
    clusterfile = tmp_path / "Clusterfile"
    clusterfile.write_text(
        "name: prod\nimage: kubernetes:v1.22.15\nmasters:\n  ip_list: [10.0.0.1]\n"
    )
    _run(monkeypatch, "apply", "-f", str(clusterfile))

    assert stub.calls == [("apply", "prod")]
    out = capsys.readouterr().out
    assert "Cluster prod applied." in out
    assert "masters: 10.0.0.1" in out


def test_scale_nodes_defaults_cluster_name(stub, monkeypatch):
    _run(monkeypatch, "scale", "nodes", "3")
    assert stub.calls == [("scale", "my-cluster", None, "3")]


def test_scale_masters_by_list(stub, monkeypatch):
    _run(monkeypatch, "scale", "masters", "10.0.0.1,10.0.0.2", "--name", "prod")
    assert stub.calls == [("scale", "prod", "10.0.0.1,10.0.0.2", None)]


def test_delete_asks_for_confirmation(stub, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    _run(monkeypatch, "delete", "--name", "prod")
    assert stub.calls == []
    assert "Aborted." in capsys.readouterr().out


def test_delete_force(stub, monkeypatch):
    _run(monkeypatch, "delete", "--name", "prod", "--force")
    assert stub.calls == [("delete", "prod")]


def test_errors_exit_non_zero(stub, monkeypatch, tmp_path, capsys):
    with pytest.raises(SystemExit) as info:
        _run(monkeypatch, "apply", "-f", str(tmp_path / "missing"))
    assert info.value.code == 1
    assert "cairnctl error:" in capsys.readouterr().err

import pytest

from cairn.models.plan import ActionName, ActionPlan, Bootstrap, PlannedAction, Teardown
from cairn.models.runtime import ImageMetadata
from cairn.reconcile.pipeline import ActionPipeline
from cairn.reconcile.planner import plan
from cairn.remote.fanout import AbortSignal, ReconcileAborted
from cairn.tests.fakes import (
    FakeGuest,
    FakeImages,
    FakeMounter,
    FakePlugins,
    RecordingExecutor,
    RecordingRuntime,
    make_cluster,
    make_context,
    make_settings,
)


def _pipeline(tmp_path, log, abort=None, **runtime_kwargs):
    settings = make_settings(tmp_path)
    abort = abort or AbortSignal()
    runtime = RecordingRuntime(
        RecordingExecutor(settings), settings, log=log, **runtime_kwargs
    )
    images = FakeImages(str(tmp_path / "pulled"), ImageMetadata(version="v1.22.15"))
    pipeline = ActionPipeline(
        runtime, images, FakeMounter(log), FakeGuest(log), FakePlugins(log), abort
    )
    return settings, pipeline


@pytest.mark.asyncio
async def test_bootstrap_runs_in_plan_order_with_plugin_phases(tmp_path):
    log = []
    settings, pipeline = _pipeline(tmp_path, log)
    cluster = make_cluster(masters=["10.0.0.1", "10.0.0.2"], nodes=["10.0.0.3"])
    ctx = make_context(settings, cluster)

    final = await pipeline.execute(plan(cluster, None), ctx)

    assert log == [
        "mount:10.0.0.1,10.0.0.2,10.0.0.3",
        "plugin:PreInit",
        "init:10.0.0.1",
        "plugin:PreInstall",
        "join_masters:10.0.0.2",
        "join_nodes:10.0.0.3",
        "guest",
        "plugin:PostInstall",
    ]
    assert final.local_rootfs == str(tmp_path / "pulled")


@pytest.mark.asyncio
async def test_teardown_wraps_reset_in_clean_phases(tmp_path):
    log = []
    settings, pipeline = _pipeline(tmp_path, log)
    cluster = make_cluster(masters=["10.0.0.1"], nodes=["10.0.0.3"])
    ctx = make_context(settings, cluster)
    teardown = ActionPlan(
        intent=Teardown(),
        actions=(
            PlannedAction(name=ActionName.RESET, hosts=("10.0.0.1", "10.0.0.3")),
            PlannedAction(
                name=ActionName.UNMOUNT_ROOTFS, hosts=("10.0.0.1", "10.0.0.3")
            ),
        ),
    )

    final = await pipeline.execute(teardown, ctx)

    assert log == [
        "plugin:PreClean",
        "reset",
        "plugin:PostClean",
        "unmount:10.0.0.1,10.0.0.3",
    ]
    assert final.masters == ()


@pytest.mark.asyncio
async def test_failure_stops_pipeline_and_propagates_unchanged(tmp_path):
    log = []
    settings, pipeline = _pipeline(tmp_path, log, fail_on="join_masters")
    cluster = make_cluster(masters=["10.0.0.1", "10.0.0.2"], nodes=["10.0.0.3"])

    with pytest.raises(RuntimeError, match="join_masters:10.0.0.2 failed"):
        await pipeline.execute(plan(cluster, None), make_context(settings, cluster))
    assert log[-1] == "join_masters:10.0.0.2"
    assert not any(entry.startswith("join_nodes") for entry in log)


@pytest.mark.asyncio
async def test_abort_checked_before_each_action(tmp_path):
    log = []
    abort = AbortSignal()
    settings, pipeline = _pipeline(tmp_path, log, abort=abort)
    cluster = make_cluster()

    class AbortingMounter(FakeMounter):
        async def mount(self, cluster, image_root, hosts):
            await super().mount(cluster, image_root, hosts)
            abort.abort("operator")

    pipeline.mounter = AbortingMounter(log)
    with pytest.raises(ReconcileAborted, match="operator"):
        await pipeline.execute(plan(cluster, None), make_context(settings, cluster))
    assert log == ["mount:10.0.0.1"]


@pytest.mark.asyncio
async def test_context_threads_between_actions(tmp_path):
    log = []
    settings, pipeline = _pipeline(tmp_path, log)
    cluster = make_cluster(masters=["10.0.0.1"], nodes=["10.0.0.3", "10.0.0.4"])
    ctx = make_context(settings, cluster, nodes=[])
    actions = ActionPlan(
        intent=Bootstrap(),
        actions=(
            PlannedAction(name=ActionName.JOIN_NODES, hosts=("10.0.0.3", "10.0.0.4")),
            PlannedAction(name=ActionName.DELETE_NODES, hosts=("10.0.0.3",)),
        ),
    )
    final = await pipeline.execute(actions, ctx)
    assert final.nodes == ("10.0.0.4",)
    assert ctx.nodes == ()

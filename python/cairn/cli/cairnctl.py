#!/usr/bin/env python3
"""
cairn/cli/cairnctl.py

Command-line entry point for cluster reconciliation:

    cairnctl apply -f Clusterfile
    cairnctl scale nodes 3 --name my-cluster
    cairnctl scale masters 10.0.0.1,10.0.0.2,10.0.0.3 --name my-cluster
    cairnctl delete --name my-cluster --force

Every subcommand loads settings from CAIRN_* environment variables. SIGINT and
SIGTERM abort the reconciliation in flight; in-flight ssh processes are killed
and the command exits non-zero.
"""

import argparse
import asyncio
import logging
import signal
import sys

import aiofiles

from cairn.models.cluster import ClusterSpec
from cairn.models.settings import CairnSettings
from cairn.reconcile.applier import Applier, summarize
from cairn.remote.fanout import AbortSignal

DEFAULT_CLUSTER_NAME = "my-cluster"


def _install_abort_handlers(abort: AbortSignal) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, abort.abort, f"received {sig.name}")


def _new_applier() -> Applier:
    abort = AbortSignal()
    _install_abort_handlers(abort)
    return Applier(CairnSettings(), abort=abort)


def _print_summary(cluster: ClusterSpec) -> None:
    for line in summarize(cluster):
        print(line)


async def _run_apply(args: argparse.Namespace) -> None:
    """
    Handler for 'apply': reconcile the cluster described by a Clusterfile.
    """
    async with aiofiles.open(args.file, "r", encoding="utf-8") as f:
        desired = ClusterSpec.from_yaml(await f.read())
    result = await _new_applier().apply(desired)
    print(f"Cluster {result.name} applied.")
    _print_summary(result)


async def _run_scale(args: argparse.Namespace) -> None:
    """
    Handler for 'scale': new count or IP list for masters or nodes.
    """
    applier = _new_applier()
    if args.group == "masters":
        result = await applier.scale(args.name, masters=args.target)
    else:
        result = await applier.scale(args.name, nodes=args.target)
    print(f"Cluster {result.name} scaled.")
    _print_summary(result)


async def _run_delete(args: argparse.Namespace) -> None:
    """
    Handler for 'delete': reset every host and drop local state.
    """
    if not args.force:
        answer = input(f"Delete cluster {args.name!r} and reset all its hosts? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return
    await _new_applier().delete(args.name)
    print(f"Cluster {args.name} deleted.")


def main() -> None:
    """
    Entry point for cairnctl.
    Subcommands:
      - apply:  reconcile from a Clusterfile
      - scale:  change the masters or nodes of a stored cluster
      - delete: tear a stored cluster down
    """
    parser = argparse.ArgumentParser(
        prog="cairnctl",
        description="Reconcile multi-node cluster deployments over SSH.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser(
        "apply", help="Create or converge a cluster from a Clusterfile."
    )
    apply_parser.add_argument(
        "-f", "--file", required=True, help="Path to the Clusterfile (YAML)."
    )
    apply_parser.set_defaults(func=_run_apply)

    scale_parser = subparsers.add_parser(
        "scale", help="Scale the masters or nodes of a stored cluster."
    )
    scale_parser.add_argument("group", choices=["masters", "nodes"])
    scale_parser.add_argument(
        "target",
        help="A count (e.g. 3) or a comma-separated IP list.",
    )
    scale_parser.add_argument(
        "--name",
        default=DEFAULT_CLUSTER_NAME,
        help=f"Cluster name (default: {DEFAULT_CLUSTER_NAME}).",
    )
    scale_parser.set_defaults(func=_run_scale)

    delete_parser = subparsers.add_parser(
        "delete", help="Reset every host of a stored cluster and forget it."
    )
    delete_parser.add_argument(
        "--name",
        default=DEFAULT_CLUSTER_NAME,
        help=f"Cluster name (default: {DEFAULT_CLUSTER_NAME}).",
    )
    delete_parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Do not ask for confirmation.",
    )
    delete_parser.set_defaults(func=_run_delete)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"cairnctl error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

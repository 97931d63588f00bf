from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence

import structlog

from policysync.clients.kubernetes import KubernetesObjectStore
from policysync.config import Settings, get_settings
from policysync.core.errors import PolicySyncError
from policysync.logging import configure_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="policysync", description="Policy synchronization controllers")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run every controller until interrupted")
    run_parser.add_argument("--cluster-namespace", help="Namespace of this cluster's Policies")
    run_parser.add_argument(
        "--cluster-namespace-on-hub", help="Namespace of this cluster's Policies on the hub"
    )
    run_parser.add_argument("--hub-kubeconfig", help="Kubeconfig of the hub cluster")
    run_parser.add_argument("--managed-kubeconfig", help="Kubeconfig of the managed cluster")
    run_parser.add_argument(
        "--disable-gatekeeper-sync",
        action="store_true",
        default=None,
        help="Do not sync Gatekeeper policy templates",
    )
    run_parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")

    return parser


def settings_from_args(args: argparse.Namespace, settings: Settings | None = None) -> Settings:
    """Overlay command line options on the environment settings."""
    settings = settings or get_settings()
    overrides = {
        field: value
        for field, value in (
            ("cluster_namespace", args.cluster_namespace),
            ("cluster_namespace_on_hub", args.cluster_namespace_on_hub),
            ("hub_kubeconfig", args.hub_kubeconfig),
            ("managed_kubeconfig", args.managed_kubeconfig),
            ("disable_gatekeeper_sync", args.disable_gatekeeper_sync),
            ("log_level", args.log_level),
        )
        if value is not None
    }
    return settings.model_copy(update=overrides)


async def run(settings: Settings) -> None:
    from policysync.manager import Manager

    hub = KubernetesObjectStore(
        kubeconfig=settings.hub_kubeconfig, context=settings.kube_context, name="hub"
    )
    managed = KubernetesObjectStore(
        kubeconfig=settings.managed_kubeconfig, context=settings.kube_context, name="managed"
    )
    await Manager(settings, hub=hub, managed=managed).run()


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "run":
        parser.print_help()
        sys.exit(1)

    settings = settings_from_args(args)
    configure_logging(settings.log_level.upper())

    if not settings.cluster_namespace:
        logger.error("cluster_namespace_missing")
        sys.exit(2)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("interrupted")
    except PolicySyncError as exc:
        logger.error("startup_failed", error=str(exc), error_category=str(exc.category))
        sys.exit(1)


if __name__ == "__main__":
    main()

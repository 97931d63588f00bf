"""
Controller manager.

Wires the hub and managed stores, the shared relays and dependency cache,
every controller and the watch loops that feed their queues. One Manager
is one long-lived process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from policysync.clients.base import ObjectStore, WatchEvent
from policysync.config import Settings
from policysync.core.errors import PolicySyncError
from policysync.dependencies.watcher import StoreWatcher
from policysync.domain.identity import DEPLOYMENT_GVK, EVENT_GVK, POLICY_GVK, ObjectIdentifier
from policysync.domain.models import Policy
from policysync.integrations import gatekeeper, policyreport
from policysync.integrations.gatekeeper import GatekeeperConstraintRelay
from policysync.integrations.policyreport import CLUSTER_POLICY_REPORT_GVK, PolicyReportRelay
from policysync.relay.cache import ResultRelay
from policysync.relay.sender import ComplianceEventSender
from policysync.relay.status import TemplateStatusReporter
from policysync.runtime import uninstall
from policysync.runtime.controller import Controller
from policysync.runtime.uninstall import UninstallState, UninstallWatcher
from policysync.runtime.watch import WatchLoop
from policysync.runtime.workqueue import WorkQueue
from policysync.statussync import CONTROLLER_NAME as STATUS_SYNC_NAME
from policysync.statussync import ComplianceHistoryAggregator, event_to_request
from policysync.templatesync import CONTROLLER_NAME as TEMPLATE_SYNC_NAME
from policysync.templatesync import TemplateSynchronizer, should_reconcile_update

logger = structlog.get_logger()


def _key(obj: dict[str, Any]) -> tuple[str, str]:
    meta = obj.get("metadata") or {}
    return meta.get("namespace", ""), meta.get("name", "")


class Manager:
    def __init__(self, settings: Settings, *, hub: ObjectStore, managed: ObjectStore) -> None:
        self.settings = settings
        self.hub = hub
        self.managed = managed
        self.uninstall = UninstallState()
        self.watcher = StoreWatcher(managed)
        # Last seen managed Policies, for update predicates
        self._policies: dict[tuple[str, str], Policy] = {}

        namespace = settings.cluster_namespace

        self.template_sync = TemplateSynchronizer(
            managed=managed,
            watcher=self.watcher,
            reporter=TemplateStatusReporter(
                self._sender(TEMPLATE_SYNC_NAME), ResultRelay(TEMPLATE_SYNC_NAME)
            ),
            cluster_namespace=namespace,
            uninstall=self.uninstall,
            disable_gatekeeper_sync=settings.disable_gatekeeper_sync,
            uninstall_requeue_seconds=settings.uninstall_requeue_seconds,
        )
        self.status_sync = ComplianceHistoryAggregator(
            hub=hub,
            managed=managed,
            hub_namespace=settings.cluster_namespace_on_hub or namespace,
            uninstall=self.uninstall,
            on_multicluster_hub=settings.on_multicluster_hub,
            uninstall_requeue_seconds=settings.uninstall_requeue_seconds,
        )
        self.uninstall_watcher = UninstallWatcher(
            managed,
            self.uninstall,
            deployment_namespace=settings.deployment_namespace,
            deployment_name=settings.deployment_name,
        )
        self.report_relay = PolicyReportRelay(
            managed=managed,
            sender=self._sender(policyreport.CONTROLLER_NAME),
            relay=ResultRelay(policyreport.CONTROLLER_NAME),
            cluster_namespace=namespace,
        )

        self.controllers: dict[str, Controller] = {}
        self._add_controller(
            TEMPLATE_SYNC_NAME, self.template_sync.reconcile, settings.template_sync_concurrency
        )
        self._add_controller(
            STATUS_SYNC_NAME, self.status_sync.reconcile, settings.status_sync_concurrency
        )
        self._add_controller(uninstall.CONTROLLER_NAME, self.uninstall_watcher.reconcile, 1)
        self._add_controller(policyreport.CONTROLLER_NAME, self.report_relay.reconcile, 1)

        self.constraint_relay: GatekeeperConstraintRelay | None = None
        if not settings.disable_gatekeeper_sync:
            self.constraint_relay = GatekeeperConstraintRelay(
                managed=managed,
                watcher=self.watcher,
                sender=self._sender(gatekeeper.CONTROLLER_NAME),
                relay=ResultRelay(gatekeeper.CONTROLLER_NAME),
                uninstall=self.uninstall,
                uninstall_requeue_seconds=settings.uninstall_requeue_seconds,
            )
            self._add_controller(
                gatekeeper.CONTROLLER_NAME,
                self.constraint_relay.reconcile,
                settings.gatekeeper_sync_concurrency,
            )

    def _sender(self, controller_name: str) -> ComplianceEventSender:
        return ComplianceEventSender(
            self.managed,
            cluster_namespace=self.settings.cluster_namespace,
            controller_name=controller_name,
            instance_name=self.settings.instance_name,
        )

    def _add_controller(self, name: str, reconciler: Any, concurrency: int) -> None:
        queue = WorkQueue(
            name,
            base_delay=self.settings.requeue_base_delay,
            max_delay=self.settings.requeue_max_delay,
        )
        self.controllers[name] = Controller(
            name, reconciler, concurrency=concurrency, queue=queue
        )

    async def on_managed_policy(self, event: WatchEvent) -> None:
        """Route a managed Policy change to the controllers that care about it."""
        key = _key(event.object)
        new = Policy.from_object(event.object)
        old = self._policies.get(key)

        if event.type == "DELETED":
            self._policies.pop(key, None)
            self._enqueue_all(key)
        else:
            self._policies[key] = new
            self.controllers[STATUS_SYNC_NAME].enqueue(*key)
            if old is None or should_reconcile_update(old, new):
                self.controllers[TEMPLATE_SYNC_NAME].enqueue(*key)
            if old is None:
                constraints_changed = gatekeeper.has_gatekeeper_constraints(new)
            else:
                constraints_changed = gatekeeper.should_reconcile_update(old, new)
            if self.constraint_relay is not None and constraints_changed:
                self.controllers[gatekeeper.CONTROLLER_NAME].enqueue(*key)

        # Policies may be dependencies of other Policies
        ident = ObjectIdentifier.for_policy(*key)
        for owner in self.watcher.owners_of(ident):
            self._enqueue_owner(owner)

    async def on_hub_policy(self, event: WatchEvent) -> None:
        _, name = _key(event.object)
        self.controllers[STATUS_SYNC_NAME].enqueue(self.settings.cluster_namespace, name)

    async def on_event(self, event: WatchEvent) -> None:
        if event.type == "DELETED":
            return
        request = event_to_request(event.object)
        if request is not None:
            self.controllers[STATUS_SYNC_NAME].enqueue(*request)

    async def on_deployment(self, event: WatchEvent) -> None:
        key = _key(event.object)
        if key == (self.settings.deployment_namespace, self.settings.deployment_name):
            self.controllers[uninstall.CONTROLLER_NAME].enqueue(*key)

    async def on_policy_report(self, event: WatchEvent) -> None:
        if event.type != "DELETED":
            self.controllers[policyreport.CONTROLLER_NAME].enqueue(*_key(event.object))

    def _enqueue_owner(self, owner: ObjectIdentifier) -> None:
        self._enqueue_all((owner.namespace, owner.name))

    def _enqueue_all(self, key: tuple[str, str]) -> None:
        self.controllers[TEMPLATE_SYNC_NAME].enqueue(*key)
        self.controllers[STATUS_SYNC_NAME].enqueue(*key)
        if self.constraint_relay is not None:
            self.controllers[gatekeeper.CONTROLLER_NAME].enqueue(*key)

    def watch_loops(self) -> list[WatchLoop]:
        settings = self.settings

        def stream(store: ObjectStore, gvk: Any, namespace: str | None) -> Callable[[str], Any]:
            return lambda resource_version: store.watch(gvk, namespace, resource_version)

        return [
            WatchLoop(
                "managed-policies",
                stream(self.managed, POLICY_GVK, settings.cluster_namespace),
                self.on_managed_policy,
            ),
            WatchLoop(
                "hub-policies",
                stream(
                    self.hub, POLICY_GVK, settings.cluster_namespace_on_hub or settings.cluster_namespace
                ),
                self.on_hub_policy,
            ),
            WatchLoop(
                "compliance-events",
                stream(self.managed, EVENT_GVK, settings.cluster_namespace),
                self.on_event,
            ),
            WatchLoop(
                "controller-deployment",
                stream(self.managed, DEPLOYMENT_GVK, settings.deployment_namespace),
                self.on_deployment,
            ),
            WatchLoop(
                "cluster-policy-reports",
                stream(self.managed, CLUSTER_POLICY_REPORT_GVK, None),
                self.on_policy_report,
            ),
        ]

    async def run(self) -> None:
        """Run every controller and watch loop until cancelled."""
        self.controllers[uninstall.CONTROLLER_NAME].enqueue(
            self.settings.deployment_namespace, self.settings.deployment_name
        )
        tasks = [
            asyncio.create_task(c.run(), name=name) for name, c in self.controllers.items()
        ]
        tasks += [asyncio.create_task(w.run(), name=w.name) for w in self.watch_loops()]
        logger.info(
            "manager_started",
            cluster_namespace=self.settings.cluster_namespace,
            controllers=sorted(self.controllers),
        )
        try:
            await asyncio.gather(*tasks)
        finally:
            for controller in self.controllers.values():
                controller.queue.shutdown()
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, PolicySyncError):
                    logger.error("manager_task_failed", error=str(result))
            logger.info("manager_stopped")

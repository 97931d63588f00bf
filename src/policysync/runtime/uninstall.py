from __future__ import annotations

import threading

import structlog

from policysync.clients.base import ObjectStore
from policysync.core.errors import NotFoundError
from policysync.domain.constants import UNINSTALL_ANNOTATION
from policysync.domain.identity import DEPLOYMENT_GVK
from policysync.runtime.controller import ReconcileResult

logger = structlog.get_logger()

CONTROLLER_NAME = "uninstall-watcher"


class UninstallState:
    """Process-wide uninstall flag. Only the uninstall watcher sets it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._uninstalling = False

    @property
    def is_uninstalling(self) -> bool:
        with self._lock:
            return self._uninstalling

    def mark_uninstalling(self) -> bool:
        """Set the flag. Returns True if it was not already set."""
        with self._lock:
            changed = not self._uninstalling
            self._uninstalling = True
            return changed


class UninstallWatcher:
    """Sets the uninstall flag once the controller Deployment is gone or annotated."""

    def __init__(
        self,
        store: ObjectStore,
        state: UninstallState,
        *,
        deployment_namespace: str,
        deployment_name: str,
    ) -> None:
        self.store = store
        self.state = state
        self.deployment_namespace = deployment_namespace
        self.deployment_name = deployment_name

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        if self.state.is_uninstalling:
            return ReconcileResult()

        try:
            deployment = await self.store.get(DEPLOYMENT_GVK, namespace, name)
        except NotFoundError:
            self._mark("deployment_not_found")
            return ReconcileResult()

        annotations = (deployment.get("metadata") or {}).get("annotations") or {}
        if annotations.get(UNINSTALL_ANNOTATION) == "true":
            self._mark("annotation_set")

        return ReconcileResult()

    def _mark(self, reason: str) -> None:
        if self.state.mark_uninstalling():
            logger.info(
                "uninstall_detected",
                deployment=f"{self.deployment_namespace}/{self.deployment_name}",
                reason=reason,
            )

"""
Dependency cache contract.

The dependency cache returns objects by identity and remembers which owner
asked for which objects, so that a change to any of them can re-trigger the
owner's reconcile. StoreWatcher is a small implementation backed by an
ObjectStore; the watch registration table lives here.
"""

from __future__ import annotations

import threading
from typing import Any, Protocol

import structlog

from policysync.clients.base import ObjectStore
from policysync.core.errors import NotFoundError, ProviderError
from policysync.domain.identity import GroupVersionKind, ObjectIdentifier

logger = structlog.get_logger()


class DynamicWatcher(Protocol):
    """Contract for the dependency cache consumed by the reconcilers."""

    async def get(
        self,
        owner: ObjectIdentifier,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
    ) -> dict[str, Any] | None:
        ...

    async def start_query_batch(self, owner: ObjectIdentifier) -> None:
        ...

    async def end_query_batch(self, owner: ObjectIdentifier) -> None:
        ...

    async def add_or_update_watcher(
        self, owner: ObjectIdentifier, *watched: ObjectIdentifier
    ) -> None:
        ...

    async def remove_watcher(self, owner: ObjectIdentifier) -> None:
        ...


class StoreWatcher:
    """
    DynamicWatcher that reads through an ObjectStore.

    Objects requested between start_query_batch and end_query_batch become
    the owner's watch set when the batch ends. owners_of() answers which
    owners must be re-triggered when an object changes.
    """

    def __init__(self, store: ObjectStore, name: str = "dependency-watcher"):
        self.name = name
        self._store = store
        self._lock = threading.Lock()
        self._watches: dict[ObjectIdentifier, frozenset[ObjectIdentifier]] = {}
        self._batches: dict[ObjectIdentifier, set[ObjectIdentifier]] = {}

    async def start_query_batch(self, owner: ObjectIdentifier) -> None:
        owner.validate()
        with self._lock:
            if owner in self._batches:
                raise ProviderError(
                    "A query batch is already in progress", details={"owner": str(owner)}
                )
            self._batches[owner] = set()

    async def end_query_batch(self, owner: ObjectIdentifier) -> None:
        with self._lock:
            requested = self._batches.pop(owner, None)
            if requested is None:
                raise ProviderError("No query batch was started", details={"owner": str(owner)})
            if requested:
                self._watches[owner] = frozenset(requested)
            else:
                self._watches.pop(owner, None)

    async def get(
        self,
        owner: ObjectIdentifier,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
    ) -> dict[str, Any] | None:
        watched = ObjectIdentifier.from_gvk(gvk, namespace, name)
        watched.validate()
        with self._lock:
            batch = self._batches.get(owner)
            if batch is None:
                raise ProviderError("No query batch was started", details={"owner": str(owner)})
            batch.add(watched)

        try:
            return await self._store.get(gvk, namespace, name)
        except NotFoundError:
            return None

    async def add_or_update_watcher(
        self, owner: ObjectIdentifier, *watched: ObjectIdentifier
    ) -> None:
        owner.validate()
        for ident in watched:
            ident.validate()
        with self._lock:
            self._watches[owner] = frozenset(watched)
        logger.debug("watcher_updated", watcher=self.name, owner=str(owner), watched=len(watched))

    async def remove_watcher(self, owner: ObjectIdentifier) -> None:
        owner.validate()
        with self._lock:
            self._watches.pop(owner, None)

    def watched_by(self, owner: ObjectIdentifier) -> frozenset[ObjectIdentifier]:
        with self._lock:
            return self._watches.get(owner, frozenset())

    def owners_of(self, ident: ObjectIdentifier) -> list[ObjectIdentifier]:
        """Owners whose watch set contains the given object."""
        with self._lock:
            return [owner for owner, watched in self._watches.items() if ident in watched]

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

from policysync.domain.identity import GroupVersionKind


@dataclass(frozen=True)
class ResourceMapping:
    """REST mapping of a kind: its plural resource name and scope."""

    group: str
    version: str
    resource: str
    kind: str
    namespaced: bool

    @property
    def crd_name(self) -> str:
        """Name of the CustomResourceDefinition that would serve this kind."""
        return f"{self.resource}.{self.group}"


@dataclass(frozen=True)
class WatchEvent:
    """A single notification from a watch stream."""

    type: str
    object: dict[str, Any]

    @property
    def resource_version(self) -> str:
        return str(self.object.get("metadata", {}).get("resourceVersion", ""))


class ObjectStore(Protocol):
    """
    Contract for a cluster object store (hub or managed).

    Objects are plain Kubernetes JSON mappings. Implementations raise
    NotFoundError, ConflictError, InvalidObjectError, MappingNotFoundError or
    ProviderError from policysync.core.errors.
    """

    async def resolve_mapping(self, gvk: GroupVersionKind) -> ResourceMapping:
        ...

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        ...

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def create(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update_status(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        ...

    async def patch_status(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        json_patch: list[dict[str, Any]],
    ) -> dict[str, Any]:
        ...

    async def delete(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        ...

    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        resource_version: str = "",
    ) -> AsyncIterator[WatchEvent]:
        ...

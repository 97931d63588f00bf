"""
Kubernetes object store.

Implements the ObjectStore contract over the kubernetes dynamic client.
The client is blocking, so every call runs in the default executor.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog
from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from policysync.clients.base import ResourceMapping, WatchEvent
from policysync.core.errors import (
    ConflictError,
    InvalidObjectError,
    MappingNotFoundError,
    NotFoundError,
    ProviderError,
    TransientError,
)
from policysync.domain.identity import GroupVersionKind

logger = structlog.get_logger()

_STREAM_END = object()


def translate_api_error(exc: ApiException, *, action: str, target: str) -> Exception:
    """Map an API status code onto the policysync error taxonomy."""
    details = {"action": action, "target": target, "status": exc.status}
    reason = exc.reason or str(exc)
    if exc.status == 404:
        return NotFoundError(f"{target} not found", details)
    if exc.status == 409:
        return ConflictError(f"Conflict on {target}: {reason}", details)
    if exc.status == 422:
        return InvalidObjectError(f"{target} is invalid: {reason}", details)
    if exc.status in (429, 500, 502, 503, 504):
        return TransientError(f"Failed to {action} {target}: {reason}", details)
    return ProviderError(f"Failed to {action} {target}: {reason}", details)


def _metadata(obj: dict[str, Any]) -> tuple[str | None, str]:
    meta = obj.get("metadata", {})
    return meta.get("namespace") or None, meta.get("name", "")


@dataclass
class KubernetesObjectStore:
    """
    Object store backed by one cluster.

    Configuration:
        kubeconfig: Path to a kubeconfig file (optional)
        context: Kubeconfig context to use (optional)

    Without a kubeconfig the in-cluster service account is tried first,
    then the default kubeconfig.
    """

    kubeconfig: str | None = None
    context: str | None = None
    name: str = "managed"

    # Internal state
    _client: Any = field(default=None, repr=False, compare=False)

    def _ensure_initialized(self) -> Any:
        """Build the dynamic client on first use."""
        if self._client is not None:
            return self._client

        try:
            if self.kubeconfig:
                api_client = config.new_client_from_config(
                    config_file=self.kubeconfig, context=self.context
                )
            else:
                try:
                    configuration = client.Configuration()
                    config.load_incluster_config(client_configuration=configuration)
                    api_client = client.ApiClient(configuration)
                except config.ConfigException:
                    api_client = config.new_client_from_config(context=self.context)
            self._client = dynamic.DynamicClient(api_client)
        except (config.ConfigException, ApiException) as e:
            raise ProviderError(
                f"Failed to load Kubernetes config for the {self.name} cluster: {e}"
            ) from e

        logger.info("kubernetes_client_initialized", cluster=self.name)
        return self._client

    async def _run_sync(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run synchronous kubernetes API call in executor."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _lookup(self, gvk: GroupVersionKind) -> Any:
        dyn = self._ensure_initialized()
        try:
            return dyn.resources.get(api_version=gvk.api_version, kind=gvk.kind)
        except ResourceNotFoundError as e:
            raise MappingNotFoundError(
                f"Mapping not found for {gvk}", details={"gvk": str(gvk)}
            ) from e

    async def _resource(self, gvk: GroupVersionKind) -> Any:
        return await self._run_sync(self._lookup, gvk)

    async def resolve_mapping(self, gvk: GroupVersionKind) -> ResourceMapping:
        resource = await self._resource(gvk)
        return ResourceMapping(
            group=gvk.group,
            version=gvk.version,
            resource=resource.name,
            kind=resource.kind,
            namespaced=bool(resource.namespaced),
        )

    async def _call(self, action: str, target: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._run_sync(func, *args, **kwargs)
        except ApiException as exc:
            error = translate_api_error(exc, action=action, target=target)
            logger.debug(
                "kubernetes_api_error",
                cluster=self.name,
                action=action,
                target=target,
                status=exc.status,
            )
            raise error from exc

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        resource = await self._resource(gvk)
        result = await self._call(
            "get", f"{gvk.kind} {name}", resource.get, name=name, namespace=namespace or None
        )
        return result.to_dict()

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        resource = await self._resource(gvk)
        kwargs: dict[str, Any] = {"namespace": namespace or None}
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = await self._call("list", f"{gvk.kind} list", resource.get, **kwargs)
        return list(result.to_dict().get("items") or [])

    async def create(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        resource = await self._resource(gvk)
        namespace, name = _metadata(obj)
        result = await self._call(
            "create", f"{gvk.kind} {name}", resource.create, body=obj, namespace=namespace
        )
        return result.to_dict()

    async def update(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        resource = await self._resource(gvk)
        namespace, name = _metadata(obj)
        result = await self._call(
            "update", f"{gvk.kind} {name}", resource.replace, body=obj, namespace=namespace
        )
        return result.to_dict()

    async def update_status(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        resource = await self._resource(gvk)
        namespace, name = _metadata(obj)
        result = await self._call(
            "update status of",
            f"{gvk.kind} {name}",
            resource.status.replace,
            body=obj,
            name=name,
            namespace=namespace,
        )
        return result.to_dict()

    async def patch_status(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        json_patch: list[dict[str, Any]],
    ) -> dict[str, Any]:
        resource = await self._resource(gvk)
        result = await self._call(
            "patch status of",
            f"{gvk.kind} {name}",
            resource.status.patch,
            body=json_patch,
            name=name,
            namespace=namespace or None,
            content_type="application/json-patch+json",
        )
        return result.to_dict()

    async def delete(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        resource = await self._resource(gvk)
        await self._call(
            "delete", f"{gvk.kind} {name}", resource.delete, name=name, namespace=namespace or None
        )

    async def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        resource_version: str = "",
    ) -> AsyncIterator[WatchEvent]:
        """Stream watch events until the server closes the connection."""
        resource = await self._resource(gvk)
        stream = await self._call(
            "watch",
            f"{gvk.kind} list",
            resource.watch,
            namespace=namespace or None,
            resource_version=resource_version or None,
        )
        while True:
            event = await self._call("watch", f"{gvk.kind} list", next, stream, _STREAM_END)
            if event is _STREAM_END:
                return
            yield WatchEvent(type=event["type"], object=dict(event["raw_object"]))

"""Root test configuration and in-memory fakes."""

from __future__ import annotations

import copy
import logging
from typing import Any

import pytest
import structlog

from policysync.clients.base import ResourceMapping, WatchEvent
from policysync.core.errors import ConflictError, MappingNotFoundError, NotFoundError
from policysync.dependencies.watcher import StoreWatcher
from policysync.domain.constants import API_GROUP, POLICY_TYPE_LABEL
from policysync.domain.identity import (
    CONSTRAINT_TEMPLATE_GVK,
    CRD_GVK,
    DEPLOYMENT_GVK,
    EVENT_GVK,
    POLICY_GVK,
    WEBHOOK_CONFIGURATION_GVK,
    GroupVersionKind,
)
from policysync.relay.cache import ResultRelay
from policysync.relay.sender import ComplianceEventSender
from policysync.relay.status import TemplateStatusReporter
from policysync.runtime.uninstall import UninstallState

CLUSTER_NAMESPACE = "cluster1"
CONFIG_POLICY_GVK = GroupVersionKind(API_GROUP, "v1", "ConfigurationPolicy")


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def _selector_matches(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for requirement in selector.split(","):
        key, _, value = requirement.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeObjectStore:
    """
    In-memory ObjectStore.

    Objects are keyed by (group, kind, namespace, name), so any version of a
    kind reads the same object. update() keeps the stored status, like an
    API server with a status subresource.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.mappings: dict[tuple[str, str], ResourceMapping] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str, str, str]] = []
        self.watch_events: dict[str, list[WatchEvent]] = {}
        self._counter = 0

        self.add_mapping(POLICY_GVK, "policies")
        self.add_mapping(CONFIG_POLICY_GVK, "configurationpolicies")
        self.add_mapping(EVENT_GVK, "events")
        self.add_mapping(DEPLOYMENT_GVK, "deployments")
        self.add_mapping(CRD_GVK, "customresourcedefinitions", namespaced=False)
        self.add_mapping(CONSTRAINT_TEMPLATE_GVK, "constrainttemplates", namespaced=False)
        self.add_mapping(
            WEBHOOK_CONFIGURATION_GVK, "validatingwebhookconfigurations", namespaced=False
        )

    def add_mapping(self, gvk: GroupVersionKind, resource: str, namespaced: bool = True) -> None:
        self.mappings[(gvk.group, gvk.kind)] = ResourceMapping(
            gvk.group, gvk.version, resource, gvk.kind, namespaced
        )

    def fail(self, op: str, kind: str, error: Exception) -> None:
        """Make every `op` call on `kind` raise `error`."""
        self.failures[(op, kind)] = error

    def put(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object directly, bypassing call recording."""
        obj = copy.deepcopy(obj)
        gvk = GroupVersionKind.from_api_version(obj["apiVersion"], obj["kind"])
        meta = obj.setdefault("metadata", {})
        meta.setdefault("uid", self._next("uid"))
        meta.setdefault("resourceVersion", self._next(""))
        self.objects[self._key(gvk, meta.get("namespace", ""), meta["name"])] = obj
        return copy.deepcopy(obj)

    def stored(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any] | None:
        obj = self.objects.get(self._key(gvk, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(o) for (_, k, _, _), o in self.objects.items() if k == kind]

    def calls_for(self, op: str, kind: str | None = None) -> list[tuple[str, str, str, str]]:
        return [c for c in self.calls if c[0] == op and (kind is None or c[1] == kind)]

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    @staticmethod
    def _key(gvk: GroupVersionKind, namespace: str | None, name: str) -> tuple[str, str, str, str]:
        return gvk.group, gvk.kind, namespace or "", name

    def _record(self, op: str, gvk: GroupVersionKind, namespace: str | None, name: str) -> None:
        self.calls.append((op, gvk.kind, namespace or "", name))
        error = self.failures.get((op, gvk.kind))
        if error is not None:
            raise error

    async def resolve_mapping(self, gvk: GroupVersionKind) -> ResourceMapping:
        mapping = self.mappings.get((gvk.group, gvk.kind))
        if mapping is None:
            raise MappingNotFoundError(
                f'no matches for kind "{gvk.kind}" in version "{gvk.api_version}"'
            )
        return mapping

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict[str, Any]:
        self._record("get", gvk, namespace, name)
        obj = self.stored(gvk, namespace, name)
        if obj is None:
            raise NotFoundError(f"{gvk.kind} {name} not found")
        return obj

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        self._record("list", gvk, namespace, "")
        items = []
        for (group, kind, ns, _), obj in self.objects.items():
            if (group, kind) != (gvk.group, gvk.kind):
                continue
            if namespace is not None and ns != namespace:
                continue
            labels = (obj.get("metadata") or {}).get("labels") or {}
            if _selector_matches(labels, label_selector):
                items.append(copy.deepcopy(obj))
        return items

    async def create(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj.get("metadata") or {}
        self._record("create", gvk, meta.get("namespace"), meta.get("name", ""))
        key = self._key(gvk, meta.get("namespace"), meta.get("name", ""))
        if key in self.objects:
            raise ConflictError(f"{gvk.kind} {meta.get('name')} already exists")
        created = copy.deepcopy(obj)
        created["metadata"]["uid"] = self._next("uid")
        created["metadata"]["resourceVersion"] = self._next("")
        self.objects[key] = created
        return copy.deepcopy(created)

    async def update(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj.get("metadata") or {}
        self._record("update", gvk, meta.get("namespace"), meta.get("name", ""))
        key = self._key(gvk, meta.get("namespace"), meta.get("name", ""))
        existing = self.objects.get(key)
        if existing is None:
            raise NotFoundError(f"{gvk.kind} {meta.get('name')} not found")
        updated = copy.deepcopy(obj)
        updated.pop("status", None)
        if "status" in existing:
            updated["status"] = copy.deepcopy(existing["status"])
        updated["metadata"]["resourceVersion"] = self._next("")
        self.objects[key] = updated
        return copy.deepcopy(updated)

    async def update_status(self, gvk: GroupVersionKind, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj.get("metadata") or {}
        self._record("update_status", gvk, meta.get("namespace"), meta.get("name", ""))
        key = self._key(gvk, meta.get("namespace"), meta.get("name", ""))
        existing = self.objects.get(key)
        if existing is None:
            raise NotFoundError(f"{gvk.kind} {meta.get('name')} not found")
        existing["status"] = copy.deepcopy(obj.get("status"))
        return copy.deepcopy(existing)

    async def patch_status(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        json_patch: list[dict[str, Any]],
    ) -> dict[str, Any]:
        self._record("patch_status", gvk, namespace, name)
        existing = self.objects.get(self._key(gvk, namespace, name))
        if existing is None:
            raise NotFoundError(f"{gvk.kind} {name} not found")
        for op in json_patch:
            assert op["op"] == "remove"
            *parents, leaf = op["path"].strip("/").split("/")
            target = existing
            for part in parents:
                target = target[part]
            del target[leaf]
        return copy.deepcopy(existing)

    async def delete(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        self._record("delete", gvk, namespace, name)
        if self.objects.pop(self._key(gvk, namespace, name), None) is None:
            raise NotFoundError(f"{gvk.kind} {name} not found")

    async def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        resource_version: str = "",
    ):
        for event in list(self.watch_events.get(gvk.kind, [])):
            yield event


class FakeClock:
    """Monotonic nanosecond clock advancing one millisecond per call."""

    def __init__(self, start: int = 1_700_000_000_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        self.now += 1_000_000
        return self.now


def config_policy_template(name: str, **spec: Any) -> dict[str, Any]:
    """A ConfigurationPolicy objectDefinition with explicit server defaults."""
    body = {
        "remediationAction": "inform",
        "pruneObjectBehavior": "None",
        "object-templates": [],
    }
    body.update(spec)
    return {
        "apiVersion": f"{API_GROUP}/v1",
        "kind": "ConfigurationPolicy",
        "metadata": {"name": name},
        "spec": body,
    }


def policy_object(
    name: str = "policy1",
    namespace: str = CLUSTER_NAMESPACE,
    templates: list[dict[str, Any]] | None = None,
    *,
    dependencies: list[dict[str, Any]] | None = None,
    status: dict[str, Any] | None = None,
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    remediation_action: str | None = None,
    generation: int = 1,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "disabled": False,
        "policy-templates": templates or [],
    }
    if dependencies:
        spec["dependencies"] = dependencies
    if remediation_action:
        spec["remediationAction"] = remediation_action
    obj: dict[str, Any] = {
        "apiVersion": f"{API_GROUP}/v1",
        "kind": "Policy",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "generation": generation,
        },
        "spec": spec,
    }
    if annotations:
        obj["metadata"]["annotations"] = annotations
    if labels:
        obj["metadata"]["labels"] = labels
    if status:
        obj["status"] = status
    return obj


@pytest.fixture
def managed_store() -> FakeObjectStore:
    store = FakeObjectStore()
    store.put(
        {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {
                "name": f"configurationpolicies.{API_GROUP}",
                "labels": {POLICY_TYPE_LABEL: "template"},
            },
            "spec": {
                "group": API_GROUP,
                "names": {"kind": "ConfigurationPolicy"},
                "scope": "Namespaced",
                "versions": [{"name": "v1"}],
            },
        }
    )
    return store


@pytest.fixture
def hub_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def watcher(managed_store: FakeObjectStore) -> StoreWatcher:
    return StoreWatcher(managed_store)


@pytest.fixture
def relay() -> ResultRelay:
    return ResultRelay("test")


@pytest.fixture
def sender(managed_store: FakeObjectStore, clock: FakeClock) -> ComplianceEventSender:
    return ComplianceEventSender(
        managed_store,
        cluster_namespace=CLUSTER_NAMESPACE,
        controller_name="test-controller",
        instance_name="test-instance",
        clock=clock,
    )


@pytest.fixture
def reporter(sender: ComplianceEventSender, relay: ResultRelay) -> TemplateStatusReporter:
    return TemplateStatusReporter(sender, relay)


@pytest.fixture
def uninstall_state() -> UninstallState:
    return UninstallState()


@pytest.fixture
def make_policy():
    return policy_object


@pytest.fixture
def make_config_policy():
    return config_policy_template

"""
Object identities.

An ObjectIdentifier names one object in a cluster store. It is a value
type: hashable, comparable and usable both as a map key and as a watch key
in the dependency cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple

from policysync.core.errors import InvalidInputError
from policysync.domain.constants import (
    API_GROUP,
    CONSTRAINT_TEMPLATE_KIND,
    GATEKEEPER_TEMPLATE_GROUP,
    POLICY_KIND,
    POLICY_VERSION,
)


class GroupVersionKind(NamedTuple):
    """A group/version/kind triple. The core group is the empty string."""

    group: str
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


POLICY_GVK = GroupVersionKind(API_GROUP, POLICY_VERSION, POLICY_KIND)
EVENT_GVK = GroupVersionKind("", "v1", "Event")
CRD_GVK = GroupVersionKind("apiextensions.k8s.io", "v1", "CustomResourceDefinition")
DEPLOYMENT_GVK = GroupVersionKind("apps", "v1", "Deployment")
WEBHOOK_CONFIGURATION_GVK = GroupVersionKind(
    "admissionregistration.k8s.io", "v1", "ValidatingWebhookConfiguration"
)
CONSTRAINT_TEMPLATE_GVK = GroupVersionKind(GATEKEEPER_TEMPLATE_GROUP, "v1", CONSTRAINT_TEMPLATE_KIND)


@dataclass(frozen=True, slots=True)
class ObjectIdentifier:
    """Identity of an object: group, version, kind, namespace and name."""

    group: str
    version: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_gvk(cls, gvk: GroupVersionKind, namespace: str, name: str) -> ObjectIdentifier:
        return cls(gvk.group, gvk.version, gvk.kind, namespace, name)

    @classmethod
    def for_policy(cls, namespace: str, name: str) -> ObjectIdentifier:
        return cls.from_gvk(POLICY_GVK, namespace, name)

    @classmethod
    def for_dependency(cls, dependency: Any, policy_namespace: str) -> ObjectIdentifier:
        """
        Identity of a declared dependency.

        A blank namespace on an in-family policy kind defaults to the
        namespace of the policy that declares it.
        """
        gvk = GroupVersionKind.from_api_version(dependency.api_version, dependency.kind)
        ident = cls.from_gvk(gvk, dependency.namespace or "", dependency.name)
        if not ident.namespace and ident.is_policy_family():
            return cls.from_gvk(gvk, policy_namespace, dependency.name)
        return ident

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(self.group, self.version, self.kind)

    @property
    def api_version(self) -> str:
        return self.gvk.api_version

    def is_policy_family(self) -> bool:
        """Whether this refers to an in-family policy kind (e.g. ConfigurationPolicy)."""
        return (
            self.group == API_GROUP
            and self.version == POLICY_VERSION
            and self.kind.endswith("Policy")
        )

    def validate(self) -> None:
        """Raise InvalidInputError when a required field is empty."""
        missing = [f for f in ("version", "kind", "name") if not getattr(self, f)]
        if missing:
            raise InvalidInputError(
                "Invalid object identifier",
                details={"missing": ",".join(missing), "identifier": str(self)},
            )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.api_version} {self.kind} {self.namespace}/{self.name}"
        return f"{self.api_version} {self.kind} {self.name}"

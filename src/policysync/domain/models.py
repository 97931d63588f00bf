"""
Replicated Policy data model.

The models mirror the persisted Kubernetes JSON shape (camelCase aliases)
and keep unknown fields so that a Policy read from one store can be written
to the other without losing data.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from policysync.domain.constants import (
    CLUSTERWIDE_FINALIZER,
    POLICY_API_VERSION,
    POLICY_KIND,
)
from policysync.domain.identity import GroupVersionKind, ObjectIdentifier


class ComplianceState(StrEnum):
    """Compliance of a template or of a whole policy."""

    COMPLIANT = "Compliant"
    NON_COMPLIANT = "NonCompliant"
    PENDING = "Pending"
    UNKNOWN = ""


class RemediationAction(StrEnum):
    ENFORCE = "enforce"
    INFORM = "inform"
    INFORM_ONLY = "informonly"


def parse_time(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp (seconds or microseconds) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_time(value: datetime) -> str:
    """Format a timestamp with second precision, as stored in lastTimestamp."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_micro_time(value: datetime) -> str:
    """Format a timestamp with microsecond precision, as stored in eventTime."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class KubeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_object(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OwnerReference(KubeModel):
    api_version: str = Field("", alias="apiVersion")
    kind: str = ""
    name: str = ""
    uid: str | None = None
    controller: bool | None = None
    block_owner_deletion: bool | None = Field(None, alias="blockOwnerDeletion")


class ObjectMeta(KubeModel):
    name: str = ""
    namespace: str = ""
    uid: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list, alias="ownerReferences")
    resource_version: str | None = Field(None, alias="resourceVersion")
    generation: int | None = None
    deletion_timestamp: str | None = Field(None, alias="deletionTimestamp")


class PolicyDependency(KubeModel):
    """A reference to another object plus the compliance it must report."""

    api_version: str = Field("", alias="apiVersion")
    kind: str = ""
    name: str = ""
    namespace: str = ""
    compliance: ComplianceState = ComplianceState.COMPLIANT

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    def identifier(self, policy_namespace: str) -> ObjectIdentifier:
        return ObjectIdentifier.for_dependency(self, policy_namespace)


class PolicyTemplate(KubeModel):
    """One embedded child object definition of a Policy."""

    object_definition: Any = Field(None, alias="objectDefinition")
    extra_dependencies: list[PolicyDependency] = Field(
        default_factory=list, alias="extraDependencies"
    )
    ignore_pending: bool = Field(False, alias="ignorePending")


class ComplianceHistory(KubeModel):
    last_timestamp: datetime | None = Field(None, alias="lastTimestamp")
    message: str = ""
    event_name: str = Field("", alias="eventName")
    # Microsecond event time; used for ordering only and never persisted.
    event_time: datetime | None = Field(None, alias="eventTime", exclude=True)

    @field_validator("last_timestamp", "event_time", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> datetime | None:
        return parse_time(value)

    @field_serializer("last_timestamp")
    def _serialize_last_timestamp(self, value: datetime | None) -> str | None:
        return format_time(value) if value is not None else None


class TemplateMeta(KubeModel):
    name: str = ""


class DetailsPerTemplate(KubeModel):
    template_meta: TemplateMeta = Field(default_factory=TemplateMeta, alias="templateMeta")
    compliance_state: ComplianceState = Field(ComplianceState.UNKNOWN, alias="compliant")
    history: list[ComplianceHistory] = Field(default_factory=list)


class PolicyStatus(KubeModel):
    compliance_state: ComplianceState = Field(ComplianceState.UNKNOWN, alias="compliant")
    details: list[DetailsPerTemplate] = Field(default_factory=list)

    def latest_message(self, index: int) -> str:
        """Most recent history message of the template at index, or an empty string."""
        if index >= len(self.details):
            return ""
        history = self.details[index].history
        if not history:
            return ""
        return history[0].message

    def same_as(self, other: PolicyStatus) -> bool:
        return self.to_object() == other.to_object()


class PolicySpec(KubeModel):
    remediation_action: str | None = Field(None, alias="remediationAction")
    disabled: bool = False
    policy_templates: list[PolicyTemplate] = Field(default_factory=list, alias="policy-templates")
    dependencies: list[PolicyDependency] = Field(default_factory=list)


class Policy(KubeModel):
    """A replicated Policy as stored on the hub or the managed cluster."""

    api_version: str = Field(POLICY_API_VERSION, alias="apiVersion")
    kind: str = POLICY_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PolicySpec = Field(default_factory=PolicySpec)
    status: PolicyStatus = Field(default_factory=PolicyStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Policy:
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def identifier(self) -> ObjectIdentifier:
        return ObjectIdentifier.for_policy(self.namespace, self.name)

    @property
    def templates(self) -> list[PolicyTemplate]:
        return self.spec.policy_templates

    def controller_reference(self) -> dict[str, Any]:
        """Owner reference stamped on every namespaced child this policy creates."""
        return {
            "apiVersion": self.api_version or POLICY_API_VERSION,
            "kind": self.kind or POLICY_KIND,
            "name": self.name,
            "uid": self.metadata.uid or "",
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def has_dependencies(self) -> bool:
        if self.spec.dependencies:
            return True
        return any(t.extra_dependencies for t in self.templates)

    def has_clusterwide_finalizer(self) -> bool:
        return CLUSTERWIDE_FINALIZER in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]

    def equivalent_to(self, other: Policy) -> bool:
        """Compare annotations and spec; labels are skipped since the cluster-namespace label differs."""
        if self.metadata.annotations != other.metadata.annotations:
            return False
        return self.spec.to_object() == other.spec.to_object()

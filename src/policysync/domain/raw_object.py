"""
Decoded policy template objects.

A template's objectDefinition is an arbitrary Kubernetes object. RawObject
wraps the decoded mapping and exposes the handful of fields the
synchronizer reads, returning None for absent fields instead of raising.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from typing import Any

from policysync.core.errors import TemplateDecodeError
from policysync.domain.identity import GroupVersionKind


class RawObject:
    """Read-only view over a decoded template object."""

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any]):
        self._data = copy.deepcopy(dict(data))

    @classmethod
    def decode(cls, raw: Any) -> RawObject:
        """
        Decode a template payload.

        Accepts a mapping, or JSON as str/bytes. Raises TemplateDecodeError
        when the payload is not an object or lacks kind/apiVersion.
        """
        data = raw
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                data = json.loads(raw)
            except ValueError as exc:
                raise TemplateDecodeError(f"Failed to decode policy template: {exc}") from exc

        if not isinstance(data, Mapping):
            raise TemplateDecodeError(
                "Failed to decode policy template: object definition is not a mapping"
            )

        if not data.get("kind"):
            raise TemplateDecodeError(
                "Object 'Kind' is missing in the policy template",
                missing_kind=True,
            )
        if not data.get("apiVersion"):
            raise TemplateDecodeError("Object 'apiVersion' is missing in the policy template")

        return cls(data)

    @property
    def kind(self) -> str:
        return str(self._data.get("kind", ""))

    @property
    def api_version(self) -> str:
        return str(self._data.get("apiVersion", ""))

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    @property
    def group(self) -> str:
        return self.gvk.group

    @property
    def version(self) -> str:
        return self.gvk.version

    @property
    def name(self) -> str:
        return str(self.field("metadata", "name") or "")

    @property
    def namespace(self) -> str:
        return str(self.field("metadata", "namespace") or "")

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def labels(self) -> dict[str, str]:
        return dict(self.field("metadata", "labels") or {})

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self.field("metadata", "annotations") or {})

    @property
    def owner_references(self) -> list[dict[str, Any]]:
        return [dict(ref) for ref in self.field("metadata", "ownerReferences") or []]

    def field(self, *path: str) -> Any | None:
        """Return a nested value, or None when any step of the path is absent."""
        current: Any = self._data
        for key in path:
            if not isinstance(current, Mapping) or key not in current:
                return None
            current = current[key]
        return copy.deepcopy(current)

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy that callers may mutate."""
        return copy.deepcopy(self._data)

    def to_json(self) -> str:
        return json.dumps(self._data, sort_keys=True)

    def contains_text(self, needle: str) -> bool:
        return needle in json.dumps(self._data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RawObject):
            return NotImplemented
        return self._data == other._data

    def __repr__(self) -> str:
        return f"RawObject({self.api_version} {self.kind} {self.namespaced_name})"

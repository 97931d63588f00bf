"""Tests for the result relay, the event sender and the template status reporter."""

from unittest.mock import AsyncMock

import pytest

from policysync.core.errors import ProviderError
from policysync.domain import ComplianceState, Policy
from policysync.domain.constants import PARENT_DB_ID_ANNOTATION
from policysync.relay import (
    RelayKey,
    ResultRelay,
    compliance_message,
    event_reason,
    object_reference,
)


class TestResultRelay:
    """Tests for ResultRelay."""

    @pytest.mark.asyncio
    async def test_emit_once_per_message(self):
        """The same message for a key is sent once."""
        relay = ResultRelay()
        send = AsyncMock()
        key = RelayKey("ns/p", "t")

        assert await relay.emit(key, "Compliant; ok", send)
        assert not await relay.emit(key, "Compliant; ok", send)
        assert send.await_count == 1

    @pytest.mark.asyncio
    async def test_new_message_is_sent(self):
        """A different message replaces the recorded one."""
        relay = ResultRelay()
        send = AsyncMock()
        key = RelayKey("ns/p", "t")

        await relay.emit(key, "Compliant; ok", send)
        assert await relay.emit(key, "NonCompliant; bad", send)
        assert send.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_send_is_not_recorded(self):
        """A send that raises can be retried."""
        relay = ResultRelay()
        key = RelayKey("ns/p", "t")
        failing = AsyncMock(side_effect=ProviderError("sink down"))

        with pytest.raises(ProviderError):
            await relay.emit(key, "Compliant; ok", failing)
        assert key not in relay

        send = AsyncMock()
        assert await relay.emit(key, "Compliant; ok", send)

    @pytest.mark.asyncio
    async def test_evict_allows_resend(self):
        """After eviction the same message goes out again."""
        relay = ResultRelay()
        send = AsyncMock()
        key = RelayKey("ns/p", "t")

        await relay.emit(key, "Compliant; ok", send)
        assert relay.evict(key)
        assert not relay.evict(key)
        assert await relay.emit(key, "Compliant; ok", send)

    def test_evict_subject(self):
        """All keys of a subject are dropped; others stay."""
        relay = ResultRelay()
        relay.record(RelayKey("ns/p", "a"), "m")
        relay.record(RelayKey("ns/p", "b"), "m")
        relay.record(RelayKey("ns/q", "a"), "m")

        assert relay.evict_subject("ns/p") == 2
        assert len(relay) == 1
        assert RelayKey("ns/q", "a") in relay

    def test_retain(self):
        """retain keeps only the listed keys of the subject."""
        relay = ResultRelay()
        keep = RelayKey("ns/p", "a")
        relay.record(keep, "m")
        relay.record(RelayKey("ns/p", "b"), "m")
        relay.record(RelayKey("ns/q", "b"), "m")

        assert relay.retain("ns/p", [keep]) == 1
        assert keep in relay
        assert RelayKey("ns/q", "b") in relay


class TestEventHelpers:
    """Tests for the event formatting helpers."""

    def test_event_reason(self):
        """Namespaced and cluster-scoped reasons."""
        assert event_reason("ns", "t") == "policy: ns/t"
        assert event_reason("", "t") == "policy: t"

    def test_compliance_message_truncated(self):
        """Messages are capped at 1024 characters ending in an ellipsis."""
        text = compliance_message(ComplianceState.NON_COMPLIANT, "x" * 2000)
        assert len(text) == 1024
        assert text.startswith("NonCompliant; ")
        assert text.endswith("...")

    def test_compliance_message_short(self):
        """Short messages are untouched."""
        assert compliance_message(ComplianceState.PENDING, "wait") == "Pending; wait"

    def test_object_reference_from_object(self):
        """Reads name, namespace and uid from metadata and drops blanks."""
        ref = object_reference(
            {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cm", "uid": "u1"}}
        )
        assert ref == {"apiVersion": "v1", "kind": "ConfigMap", "name": "cm", "uid": "u1"}


class TestComplianceEventSender:
    """Tests for ComplianceEventSender."""

    def test_build_event(self, sender):
        """The event follows the recorder naming and carries both timestamps."""
        owner = {"apiVersion": "policy.open-cluster-management.io/v1", "kind": "Policy", "name": "p", "uid": "u"}
        event = sender.build_event(
            owner=owner,
            reason="policy: cluster1/t",
            message="bad",
            compliance=ComplianceState.NON_COMPLIANT,
            related={"apiVersion": "v1", "kind": "ConfigMap", "name": "cm"},
        )

        name, _, suffix = event["metadata"]["name"].rpartition(".")
        assert name == "p"
        int(suffix, 16)
        assert event["metadata"]["namespace"] == "cluster1"
        assert event["involvedObject"]["namespace"] == "cluster1"
        assert event["involvedObject"]["uid"] == "u"
        assert event["type"] == "Warning"
        assert event["message"] == "NonCompliant; bad"
        assert event["action"] == "ComplianceStateUpdate"
        assert event["related"]["kind"] == "ConfigMap"
        assert event["eventTime"].endswith("Z")
        assert event["lastTimestamp"] == event["firstTimestamp"]

    def test_normal_type_for_compliant(self, sender):
        """Compliant events are not warnings."""
        event = sender.build_event(
            owner={"name": "p"}, reason="policy: t", message="ok", compliance=ComplianceState.COMPLIANT
        )
        assert event["type"] == "Normal"
        assert "related" not in event

    def test_warning_type_for_pending(self, sender):
        """Blocking Pending events are warnings."""
        event = sender.build_event(
            owner={"name": "p"}, reason="policy: t", message="waiting", compliance=ComplianceState.PENDING
        )
        assert event["type"] == "Warning"

    @pytest.mark.asyncio
    async def test_ignored_pending_is_normal(self, reporter, managed_store, make_policy):
        """Pending reported under ignorePending is informational."""
        policy = Policy.from_object(make_policy())

        await reporter.pending(policy, 0, "t", "waiting", ignore_pending=True)
        await reporter.pending(policy, 1, "u", "waiting")

        types = {e["reason"]: e["type"] for e in managed_store.of_kind("Event")}
        assert types == {"policy: cluster1/t": "Normal", "policy: cluster1/u": "Warning"}

    @pytest.mark.asyncio
    async def test_send_creates_event(self, sender, managed_store):
        """send() creates the event through the store."""
        await sender.send(
            owner={"name": "p"}, reason="policy: t", message="ok", compliance=ComplianceState.COMPLIANT
        )
        assert len(managed_store.of_kind("Event")) == 1

    def test_event_names_are_unique(self, sender):
        """Consecutive events get distinct names."""
        first = sender.build_event(owner={"name": "p"}, reason="r", message="m", compliance=ComplianceState.COMPLIANT)
        second = sender.build_event(owner={"name": "p"}, reason="r", message="m", compliance=ComplianceState.COMPLIANT)
        assert first["metadata"]["name"] != second["metadata"]["name"]


class TestTemplateStatusReporter:
    """Tests for TemplateStatusReporter."""

    @pytest.mark.asyncio
    async def test_error_prefix_and_dedup(self, reporter, managed_store, make_policy):
        """Errors are prefixed and relayed once."""
        policy = Policy.from_object(make_policy())

        assert await reporter.error(policy, 0, "t", "boom")
        assert not await reporter.error(policy, 0, "t", "boom")

        events = managed_store.of_kind("Event")
        assert len(events) == 1
        assert events[0]["message"] == "NonCompliant; template-error; boom"
        assert events[0]["reason"] == "policy: cluster1/t"

    @pytest.mark.asyncio
    async def test_skipped_when_status_has_message(self, reporter, relay, managed_store, make_policy):
        """A message already in the status is not sent and its relay entry is evicted."""
        relay.record(RelayKey("cluster1/policy1", "t"), "Compliant; ok")
        status = {
            "details": [
                {"templateMeta": {"name": "t"}, "history": [{"message": "Compliant; ok"}]}
            ]
        }
        policy = Policy.from_object(make_policy(status=status))

        assert not await reporter.success(policy, 0, "t", "ok")
        assert RelayKey("cluster1/policy1", "t") not in relay
        assert managed_store.of_kind("Event") == []

    @pytest.mark.asyncio
    async def test_pending_ignored(self, reporter, managed_store, make_policy):
        """ignorePending reports Compliant with a suffix."""
        policy = Policy.from_object(make_policy())

        await reporter.pending(policy, 0, "t", "waiting", ignore_pending=True)

        event = managed_store.of_kind("Event")[0]
        assert event["message"] == "Compliant; waiting but ignorePending is true"

    @pytest.mark.asyncio
    async def test_cluster_scoped_reason(self, reporter, managed_store, make_policy):
        """Cluster-scoped templates use a reason without namespace."""
        policy = Policy.from_object(make_policy())
        await reporter.pending(policy, 0, "t", "waiting", cluster_scoped=True)
        event = managed_store.of_kind("Event")[0]
        assert event["reason"] == "policy: t"
        assert event["message"] == "Pending; waiting"

    @pytest.mark.asyncio
    async def test_db_id_annotation(self, reporter, managed_store, make_policy):
        """The parent compliance DB id is carried on the event."""
        policy = Policy.from_object(make_policy(annotations={PARENT_DB_ID_ANNOTATION: "42"}))
        await reporter.success(policy, 0, "t", "ok")
        event = managed_store.of_kind("Event")[0]
        assert event["metadata"]["annotations"] == {PARENT_DB_ID_ANNOTATION: "42"}

    @pytest.mark.asyncio
    async def test_forget_policy(self, reporter, relay, make_policy):
        """Forgetting a policy evicts all of its templates."""
        policy = Policy.from_object(make_policy())
        await reporter.error(policy, 0, "a", "x")
        await reporter.error(policy, 1, "b", "y")
        assert reporter.forget_policy("cluster1", "policy1") == 2
        assert len(relay) == 0

"""Tests for the compliance history aggregator."""

import pytest

from policysync.domain import POLICY_GVK, ComplianceState, Policy
from policysync.domain.constants import CLUSTER_NAMESPACE_LABEL
from policysync.statussync import (
    ComplianceHistoryAggregator,
    compute_status,
    event_to_request,
    is_event_for_policy,
)

HUB_NAMESPACE = "hub-ns"


def compliance_event(template, message, second, *, policy="policy1", uid="uid-policy1", suffix=None):
    suffix = suffix if suffix is not None else f"{second:x}"
    return {
        "apiVersion": "v1",
        "kind": "Event",
        "metadata": {"name": f"{policy}.{suffix}", "namespace": "cluster1"},
        "involvedObject": {
            "apiVersion": "policy.open-cluster-management.io/v1",
            "kind": "Policy",
            "name": policy,
            "namespace": "cluster1",
            "uid": uid,
        },
        "reason": f"policy: cluster1/{template}",
        "message": message,
        "lastTimestamp": f"2024-01-01T00:00:{second:02d}Z",
    }


@pytest.fixture
def aggregator(hub_store, managed_store, uninstall_state):
    return ComplianceHistoryAggregator(
        hub=hub_store,
        managed=managed_store,
        hub_namespace=HUB_NAMESPACE,
        uninstall=uninstall_state,
    )


@pytest.fixture
def templates(make_config_policy):
    return [
        {"objectDefinition": make_config_policy("cfg-a")},
        {"objectDefinition": make_config_policy("cfg-b")},
    ]


class TestComputeStatus:
    """Tests for compute_status."""

    def test_rollup_from_events(self, make_policy, templates):
        """Each template takes its newest event and the policy rolls them up."""
        policy = Policy.from_object(make_policy(templates=templates))
        events = [
            compliance_event("cfg-a", "Compliant; ok", 1),
            compliance_event("cfg-a", "NonCompliant; drift", 2),
            compliance_event("cfg-b", "Compliant; ok", 3),
        ]

        status = compute_status(policy, events)

        assert status.compliance_state == ComplianceState.NON_COMPLIANT
        assert [d.template_meta.name for d in status.details] == ["cfg-a", "cfg-b"]
        assert [h.message for h in status.details[0].history] == [
            "NonCompliant; drift",
            "Compliant; ok",
        ]
        assert status.details[1].compliance_state == ComplianceState.COMPLIANT

    def test_events_of_other_policies_ignored(self, make_policy, templates):
        policy = Policy.from_object(make_policy(templates=templates))
        events = [compliance_event("cfg-a", "NonCompliant; x", 1, uid="uid-other")]

        status = compute_status(policy, events)

        assert status.details[0].history == []
        assert status.compliance_state == ComplianceState.PENDING

    def test_history_carried_over(self, make_policy, templates):
        """Entries no longer backed by an event are kept from the status."""
        status = {
            "details": [
                {
                    "templateMeta": {"name": "cfg-a"},
                    "history": [
                        {
                            "lastTimestamp": "2024-01-01T00:00:01Z",
                            "eventName": "policy1.1",
                            "message": "Compliant; old",
                        }
                    ],
                }
            ]
        }
        policy = Policy.from_object(make_policy(templates=templates, status=status))

        result = compute_status(policy, [compliance_event("cfg-a", "NonCompliant; new", 2)])

        assert [h.message for h in result.details[0].history] == [
            "NonCompliant; new",
            "Compliant; old",
        ]

    def test_undecodable_template(self, make_policy, make_config_policy):
        """A template that can't be decoded is NonCompliant under a synthetic name."""
        policy = Policy.from_object(
            make_policy(
                templates=[
                    {"objectDefinition": {"apiVersion": "v1"}},
                    {"objectDefinition": make_config_policy("cfg")},
                ]
            )
        )

        status = compute_status(policy, [compliance_event("cfg", "Compliant; ok", 1)])

        assert status.details[0].template_meta.name == "template-0"
        assert status.details[0].compliance_state == ComplianceState.NON_COMPLIANT
        assert status.compliance_state == ComplianceState.NON_COMPLIANT

    def test_no_templates_is_compliant(self, make_policy):
        status = compute_status(Policy.from_object(make_policy()), [])
        assert status.compliance_state == ComplianceState.COMPLIANT
        assert status.details == []


class TestEventMapping:
    """Tests for event_to_request and is_event_for_policy."""

    def test_event_to_request(self):
        event = compliance_event("cfg", "Compliant; ok", 1)
        assert event_to_request(event) == ("cluster1", "policy1")

    def test_event_without_involved_object(self):
        assert event_to_request({"metadata": {"name": "x"}}) is None

    def test_namespace_falls_back_to_event(self):
        event = {"metadata": {"namespace": "ns"}, "involvedObject": {"name": "p"}}
        assert event_to_request(event) == ("ns", "p")

    def test_matched_by_uid(self, make_policy):
        """A reused name with another uid belongs to a previous Policy."""
        policy = Policy.from_object(make_policy())
        assert is_event_for_policy(compliance_event("t", "m", 1), policy)
        assert not is_event_for_policy(compliance_event("t", "m", 1, uid="stale"), policy)

    def test_matched_by_name_without_uid(self, make_policy):
        policy = Policy.from_object(make_policy())
        event = compliance_event("t", "m", 1, uid="")
        assert is_event_for_policy(event, policy)


class TestAggregator:
    """Tests for ComplianceHistoryAggregator.reconcile."""

    @pytest.mark.asyncio
    async def test_status_written_to_both_copies(
        self, aggregator, hub_store, managed_store, make_policy, templates
    ):
        hub_store.put(make_policy(namespace=HUB_NAMESPACE, templates=templates))
        managed_store.put(make_policy(templates=templates))
        managed_store.put(compliance_event("cfg-a", "Compliant; ok", 1))
        managed_store.put(compliance_event("cfg-b", "NonCompliant; bad", 2))

        result = await aggregator.reconcile("cluster1", "policy1")

        assert result.error is None
        managed = managed_store.stored(POLICY_GVK, "cluster1", "policy1")
        hub = hub_store.stored(POLICY_GVK, HUB_NAMESPACE, "policy1")
        assert managed["status"]["compliant"] == "NonCompliant"
        assert hub["status"] == managed["status"]
        assert managed["status"]["details"][0]["history"][0]["lastTimestamp"] == (
            "2024-01-01T00:00:01Z"
        )

    @pytest.mark.asyncio
    async def test_unchanged_status_not_rewritten(
        self, aggregator, hub_store, managed_store, make_policy, templates
    ):
        hub_store.put(make_policy(namespace=HUB_NAMESPACE, templates=templates))
        managed_store.put(make_policy(templates=templates))
        managed_store.put(compliance_event("cfg-a", "Compliant; ok", 1))

        await aggregator.reconcile("cluster1", "policy1")
        managed_store.calls.clear()
        hub_store.calls.clear()
        await aggregator.reconcile("cluster1", "policy1")

        assert managed_store.calls_for("update_status") == []
        assert hub_store.calls_for("update_status") == []

    @pytest.mark.asyncio
    async def test_multicluster_hub_skips_hub_status(
        self, hub_store, managed_store, uninstall_state, make_policy, templates
    ):
        aggregator = ComplianceHistoryAggregator(
            hub=hub_store,
            managed=managed_store,
            hub_namespace=HUB_NAMESPACE,
            uninstall=uninstall_state,
            on_multicluster_hub=True,
        )
        hub_store.put(make_policy(namespace=HUB_NAMESPACE, templates=templates))
        managed_store.put(make_policy(templates=templates))

        await aggregator.reconcile("cluster1", "policy1")

        assert hub_store.calls_for("update_status") == []
        assert len(managed_store.calls_for("update_status")) == 1

    @pytest.mark.asyncio
    async def test_spec_drift_corrected_before_status(
        self, aggregator, hub_store, managed_store, make_policy, templates
    ):
        """A managed spec that differs from the hub is overwritten and status waits."""
        hub_store.put(
            make_policy(namespace=HUB_NAMESPACE, templates=templates, remediation_action="enforce")
        )
        managed_store.put(make_policy(templates=templates))

        await aggregator.reconcile("cluster1", "policy1")

        managed = managed_store.stored(POLICY_GVK, "cluster1", "policy1")
        assert managed["spec"]["remediationAction"] == "enforce"
        assert managed_store.calls_for("update_status") == []

    @pytest.mark.asyncio
    async def test_hub_deleted_removes_managed(self, aggregator, managed_store, make_policy):
        managed_store.put(make_policy())

        await aggregator.reconcile("cluster1", "policy1")

        assert managed_store.stored(POLICY_GVK, "cluster1", "policy1") is None

    @pytest.mark.asyncio
    async def test_managed_recreated_from_hub(self, aggregator, hub_store, managed_store, make_policy):
        """A managed copy deleted out of band comes back from the hub."""
        hub_store.put(
            make_policy(namespace=HUB_NAMESPACE, labels={CLUSTER_NAMESPACE_LABEL: HUB_NAMESPACE})
        )

        await aggregator.reconcile("cluster1", "policy1")

        managed = managed_store.stored(POLICY_GVK, "cluster1", "policy1")
        assert managed is not None
        assert managed["metadata"]["namespace"] == "cluster1"
        assert managed["metadata"]["labels"][CLUSTER_NAMESPACE_LABEL] == "cluster1"
        assert managed["metadata"]["uid"] != "uid-policy1"

    @pytest.mark.asyncio
    async def test_both_deleted(self, aggregator, managed_store):
        result = await aggregator.reconcile("cluster1", "policy1")
        assert result.requeue_after is None
        assert managed_store.calls_for("create") == []

    @pytest.mark.asyncio
    async def test_uninstalling(self, aggregator, managed_store, uninstall_state):
        uninstall_state.mark_uninstalling()
        result = await aggregator.reconcile("cluster1", "policy1")
        assert result.requeue_after == 300.0
        assert managed_store.calls == []

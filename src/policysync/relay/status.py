from __future__ import annotations

from typing import Any

import structlog

from policysync.domain.constants import PARENT_DB_ID_ANNOTATION
from policysync.domain.models import ComplianceState, Policy
from policysync.domain.raw_object import RawObject
from policysync.relay.cache import RelayKey, ResultRelay
from policysync.relay.sender import ComplianceEventSender, event_reason

logger = structlog.get_logger()

TEMPLATE_ERROR_PREFIX = "template-error; "
IGNORE_PENDING_SUFFIX = " but ignorePending is true"


def policy_subject(policy: Policy) -> str:
    return f"{policy.namespace}/{policy.name}"


class TemplateStatusReporter:
    """
    Reports per-template outcomes of the template synchronizer.

    A message is skipped when the Policy status already records it as the
    template's latest history entry, and otherwise goes through the relay
    so that retries do not emit it twice.
    """

    def __init__(self, sender: ComplianceEventSender, relay: ResultRelay):
        self.sender = sender
        self.relay = relay

    async def error(
        self,
        policy: Policy,
        index: int,
        template_name: str,
        message: str,
        *,
        cluster_scoped: bool = False,
        template: RawObject | None = None,
    ) -> bool:
        return await self.report(
            policy,
            index,
            template_name,
            ComplianceState.NON_COMPLIANT,
            TEMPLATE_ERROR_PREFIX + message,
            cluster_scoped=cluster_scoped,
            template=template,
        )

    async def pending(
        self,
        policy: Policy,
        index: int,
        template_name: str,
        message: str,
        *,
        ignore_pending: bool = False,
        cluster_scoped: bool = False,
        template: RawObject | None = None,
    ) -> bool:
        compliance = ComplianceState.PENDING
        if ignore_pending:
            compliance = ComplianceState.COMPLIANT
            message += IGNORE_PENDING_SUFFIX
        return await self.report(
            policy,
            index,
            template_name,
            compliance,
            message,
            cluster_scoped=cluster_scoped,
            template=template,
        )

    async def success(
        self,
        policy: Policy,
        index: int,
        template_name: str,
        message: str,
        *,
        cluster_scoped: bool = False,
        template: RawObject | None = None,
    ) -> bool:
        return await self.report(
            policy,
            index,
            template_name,
            ComplianceState.COMPLIANT,
            message,
            cluster_scoped=cluster_scoped,
            template=template,
        )

    async def report(
        self,
        policy: Policy,
        index: int,
        template_name: str,
        compliance: ComplianceState,
        message: str,
        *,
        cluster_scoped: bool = False,
        template: RawObject | None = None,
    ) -> bool:
        """Emit a compliance signal for one template. Returns whether anything was sent."""
        key = RelayKey(policy_subject(policy), template_name)
        full_message = f"{compliance}; {message}"

        if full_message in policy.status.latest_message(index):
            # The status already reflects it, so a later round trip back to
            # this message must be announced again.
            self.relay.evict(key)
            return False

        namespace = "" if cluster_scoped else policy.namespace
        owner = {
            "apiVersion": policy.api_version,
            "kind": policy.kind,
            "name": policy.name,
            "uid": policy.metadata.uid or "",
        }

        async def send() -> Any:
            return await self.sender.send(
                owner=owner,
                reason=event_reason(namespace, template_name),
                message=message,
                compliance=compliance,
                related=self._related(template),
                namespace=policy.namespace,
                annotations=self._annotations(policy),
            )

        sent = await self.relay.emit(key, full_message, send)
        if not sent:
            logger.debug(
                "template_status_suppressed",
                namespace=policy.namespace,
                policy=policy.name,
                template=template_name,
            )
        return sent

    def forget(self, policy: Policy, template_name: str) -> None:
        self.relay.evict(RelayKey(policy_subject(policy), template_name))

    def forget_policy(self, namespace: str, name: str) -> int:
        return self.relay.evict_subject(f"{namespace}/{name}")

    @staticmethod
    def _related(template: RawObject | None) -> dict[str, Any] | None:
        if template is None:
            return None
        return {
            "apiVersion": template.api_version,
            "kind": template.kind,
            "name": template.name,
            "namespace": template.namespace,
        }

    @staticmethod
    def _annotations(policy: Policy) -> dict[str, str] | None:
        db_id = policy.metadata.annotations.get(PARENT_DB_ID_ANNOTATION)
        if not db_id:
            return None
        return {PARENT_DB_ID_ANNOTATION: db_id}

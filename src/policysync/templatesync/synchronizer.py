"""
Template synchronizer.

Expands a replicated Policy into its child objects on the managed cluster.
Every template is attempted on every pass; a failing template is reported
through its status and never stops its siblings. Children are created only
once their dependencies are satisfied and are deleted again when a
dependency regresses.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from policysync.clients.base import ObjectStore, ResourceMapping
from policysync.core.errors import (
    AdoptionConflictError,
    ConflictError,
    DependencyConflictError,
    InvalidObjectError,
    MappingNotFoundError,
    NamingConflictError,
    NotFoundError,
    PolicySyncError,
    ProviderError,
    TemplateDecodeError,
    TemplateError,
    UnsupportedTemplateError,
)
from policysync.dependencies.resolution import (
    DependencyMap,
    evaluate_dependencies,
    generate_pending_message,
    resolve_dependencies,
    resolve_top_level,
)
from policysync.dependencies.watcher import DynamicWatcher
from policysync.domain.constants import (
    API_GROUP,
    CLUSTERWIDE_FINALIZER,
    GATEKEEPER_CONSTRAINT_GROUP,
    PARENT_DB_ID_ANNOTATION,
    PARENT_POLICY_LABEL,
    POLICY_TYPE_LABEL,
)
from policysync.domain.identity import (
    CONSTRAINT_TEMPLATE_GVK,
    CRD_GVK,
    POLICY_GVK,
    GroupVersionKind,
    ObjectIdentifier,
)
from policysync.domain.models import Policy, PolicyTemplate
from policysync.domain.raw_object import RawObject
from policysync.logging import bind_request, log_template_failure
from policysync.relay.status import TemplateStatusReporter
from policysync.runtime.uninstall import UninstallState
from policysync.templatesync.outcomes import (
    TemplateAction,
    TemplateOutcome,
    TemplateState,
    TemplateSyncResult,
)
from policysync.templatesync.templates import (
    DUPLICATE_NAMES_MESSAGE,
    apply_template,
    create_error_message,
    decode_error_message,
    equivalent_templates,
    has_duplicate_names,
    is_allowed_kind,
    is_constraint_template,
    is_gatekeeper_object,
    mapping_error_message,
    naming_conflict_message,
    override_remediation_action,
    synthetic_name,
    template_labels,
    unsupported_kind_message,
    uses_hub_templates,
)

logger = structlog.get_logger()

CONTROLLER_NAME = "policy-template-sync"

_RESET_COMPLIANCE_PATCH = [{"op": "remove", "path": "/status/compliant"}]


@dataclass
class _SyncPass:
    """State accumulated across the templates of one reconcile."""

    policy: Policy
    owner: ObjectIdentifier
    log: Any
    top_level: DependencyMap
    all_deps: DependencyMap
    template_names: list[str] = field(default_factory=list)
    child_ids: list[ObjectIdentifier] = field(default_factory=list)
    add_finalizer: bool = False


class TemplateSynchronizer:
    def __init__(
        self,
        *,
        managed: ObjectStore,
        watcher: DynamicWatcher,
        reporter: TemplateStatusReporter,
        cluster_namespace: str,
        uninstall: UninstallState,
        disable_gatekeeper_sync: bool = False,
        uninstall_requeue_seconds: float = 300.0,
    ) -> None:
        self.managed = managed
        self.watcher = watcher
        self.reporter = reporter
        self.cluster_namespace = cluster_namespace
        self.uninstall = uninstall
        self.disable_gatekeeper_sync = disable_gatekeeper_sync
        self.uninstall_requeue_seconds = uninstall_requeue_seconds

    async def reconcile(self, namespace: str, name: str) -> TemplateSyncResult:
        log = bind_request(CONTROLLER_NAME, namespace, name)
        result = TemplateSyncResult()
        owner = ObjectIdentifier.for_policy(namespace, name)

        try:
            obj = await self.managed.get(POLICY_GVK, namespace, name)
        except NotFoundError:
            log.info("policy_not_found")
            try:
                await self.watcher.remove_watcher(owner)
            except PolicySyncError as exc:
                log.error("dependency_watch_removal_failed", error=str(exc))
            self.reporter.forget_policy(namespace, name)
            return result

        policy = Policy.from_object(obj)

        if not policy.templates:
            log.info("policy_has_no_templates")
            if policy.has_clusterwide_finalizer():
                policy.remove_finalizer(CLUSTERWIDE_FINALIZER)
                await self._update_policy(policy)
            return result

        if has_duplicate_names(policy):
            for index in range(len(policy.templates)):
                template_name = synthetic_name(index)
                error = TemplateError(DUPLICATE_NAMES_MESSAGE)
                await self._emit(
                    log, self.reporter.error(policy, index, template_name, DUPLICATE_NAMES_MESSAGE)
                )
                result.record(
                    TemplateOutcome(
                        index,
                        template_name,
                        TemplateState.ERRORED,
                        message=DUPLICATE_NAMES_MESSAGE,
                        error=error,
                    )
                )
            log_template_failure(
                log,
                "duplicate_template_names",
                category="user",
                error_type="format-error",
                error=DUPLICATE_NAMES_MESSAGE,
            )
            return result

        if policy.metadata.deletion_timestamp:
            if not policy.has_clusterwide_finalizer():
                return result
            log.info("finalizer_cleanup_started")
            await self._finalizer_cleanup(policy)
            policy.remove_finalizer(CLUSTERWIDE_FINALIZER)
            await self._update_policy(policy)
            log.info("finalizer_cleanup_completed")
            return result

        if self.uninstall.is_uninstalling:
            log.info("reconcile_skipped_uninstalling")
            result.requeue_after = self.uninstall_requeue_seconds
            return result

        top_level = resolve_top_level(policy.spec.dependencies, namespace)
        state = _SyncPass(
            policy=policy,
            owner=owner,
            log=log,
            top_level=top_level,
            all_deps=dict(top_level),
        )

        await self.watcher.start_query_batch(owner)
        try:
            for index, template in enumerate(policy.templates):
                outcome = await self._sync_template(state, index, template)
                result.record(outcome)
        finally:
            await self.watcher.end_query_batch(owner)

        await self._register_watches(state, result)

        try:
            await self._cleanup_excess_templates(policy, state.template_names, log)
        except PolicySyncError as exc:
            log.error("template_cleanup_failed", error=str(exc))
            result.fail(exc)

        await self._reconcile_finalizer(state, result)

        log.debug("reconcile_completed", templates=len(result.outcomes))
        return result

    async def _sync_template(
        self, state: _SyncPass, index: int, template: PolicyTemplate
    ) -> TemplateOutcome:
        policy = state.policy
        log = state.log

        try:
            raw = RawObject.decode(template.object_definition)
        except TemplateDecodeError as exc:
            template_name = synthetic_name(index)
            message = decode_error_message(exc)
            await self._emit(log, self.reporter.error(policy, index, template_name, message))
            log_template_failure(
                log,
                "template_decode_failed",
                category="user",
                error_type="format-error",
                error=exc,
                template_index=index,
            )
            # A missing kind needs a Policy update, so retrying is pointless
            return TemplateOutcome(
                index,
                template_name,
                TemplateState.ERRORED,
                message=message,
                error=exc,
                requeue=not exc.missing_kind,
            )

        gvk = raw.gvk
        cluster_scoped = is_gatekeeper_object(gvk)

        try:
            deps = resolve_dependencies(state.top_level, template.extra_dependencies, policy.namespace)
        except DependencyConflictError as exc:
            template_name = synthetic_name(index)
            message = f"Failed to decode policy template with err: {exc.message}"
            await self._emit(
                log,
                self.reporter.error(
                    policy, index, template_name, message, cluster_scoped=cluster_scoped
                ),
            )
            log_template_failure(
                log,
                "template_dependency_conflict",
                category="user",
                error_type="dependency-error",
                error=exc,
                template_index=index,
            )
            return TemplateOutcome(
                index, template_name, TemplateState.ERRORED, message=message, error=exc
            )
        state.all_deps.update(deps)

        name = raw.name
        if not name:
            template_name = synthetic_name(index)
            message = f"Failed to get name from policy template at index {index}"
            error = TemplateError(message)
            await self._emit(
                log,
                self.reporter.error(
                    policy, index, template_name, message, cluster_scoped=cluster_scoped
                ),
            )
            log_template_failure(
                log,
                "template_name_missing",
                category="user",
                error_type="format-error",
                error=error,
                template_index=index,
            )
            return TemplateOutcome(
                index,
                template_name,
                TemplateState.ERRORED,
                message=message,
                error=error,
                requeue=True,
            )

        state.template_names.append(name)
        tlog = log.bind(template=name, kind=gvk.kind)

        try:
            mapping = await self.managed.resolve_mapping(gvk)
        except MappingNotFoundError as exc:
            message = mapping_error_message(
                gvk, exc, gatekeeper_disabled=self.disable_gatekeeper_sync
            )
            await self._emit(
                tlog,
                self.reporter.error(
                    policy, index, name, message, cluster_scoped=cluster_scoped, template=raw
                ),
            )
            log_template_failure(
                tlog, "template_mapping_not_found", category="user", error_type="crd-error", error=exc
            )
            return TemplateOutcome(
                index, name, TemplateState.ERRORED, message=message, error=exc, requeue=True
            )

        cluster_scoped = not mapping.namespaced

        has_label = await self._has_template_label(mapping)
        gatekeeper_disabled = self.disable_gatekeeper_sync and is_gatekeeper_object(gvk)
        if (not has_label and not is_allowed_kind(gvk)) or gatekeeper_disabled:
            message = unsupported_kind_message(
                gvk, gatekeeper_disabled=self.disable_gatekeeper_sync
            )
            error = UnsupportedTemplateError(message)
            await self._emit(
                tlog,
                self.reporter.error(
                    policy, index, name, message, cluster_scoped=cluster_scoped, template=raw
                ),
            )
            log_template_failure(
                tlog, "template_kind_unsupported", category="user", error_type="crd-error", error=error
            )
            return TemplateOutcome(
                index, name, TemplateState.ERRORED, message=message, error=error, requeue=True
            )

        if uses_hub_templates(raw):
            message = f"Templates are not supported for kind : {gvk.kind}"
            error = UnsupportedTemplateError(message)
            await self._emit(
                tlog,
                self.reporter.error(
                    policy, index, name, message, cluster_scoped=cluster_scoped, template=raw
                ),
            )
            log_template_failure(
                tlog, "template_hub_templates_rejected", category="user", error_type="format-error", error=error
            )
            return TemplateOutcome(index, name, TemplateState.ERRORED, message=message, error=error)

        failures = await evaluate_dependencies(
            self.watcher, state.owner, deps, self.cluster_namespace, log=tlog
        )

        resource_namespace = "" if cluster_scoped else policy.namespace
        desired = raw.to_dict()
        meta = desired.setdefault("metadata", {})
        if resource_namespace:
            meta["namespace"] = resource_namespace
        else:
            meta.pop("namespace", None)

        db_id = policy.metadata.annotations.get(PARENT_DB_ID_ANNOTATION)
        if db_id:
            annotations = meta.get("annotations") or {}
            annotations[PARENT_DB_ID_ANNOTATION] = db_id
            meta["annotations"] = annotations

        state.child_ids.append(ObjectIdentifier.from_gvk(gvk, resource_namespace, name))

        try:
            existing = await self.managed.get(gvk, resource_namespace, name)
        except NotFoundError:
            existing = None
        except PolicySyncError as exc:
            message = f"Failed to get the object in the policy template: {exc}"
            await self._emit(
                tlog,
                self.reporter.error(
                    policy, index, name, message, cluster_scoped=cluster_scoped, template=raw
                ),
            )
            log_template_failure(
                tlog, "template_get_failed", category="system", error_type="get-error", error=exc
            )
            return TemplateOutcome(
                index, name, TemplateState.ERRORED, message=message, error=exc, requeue=True
            )

        pending_message = ""
        if failures:
            pending_message = generate_pending_message(failures)
            emit_error = await self._emit(
                tlog,
                self.reporter.pending(
                    policy,
                    index,
                    name,
                    pending_message,
                    ignore_pending=template.ignore_pending,
                    cluster_scoped=cluster_scoped,
                    template=raw,
                ),
            )
            if not template.ignore_pending:
                tlog.info("dependencies_not_satisfied", pending=len(failures))
                return await self._revoke(
                    tlog, index, name, gvk, resource_namespace, existing, pending_message, emit_error
                )
            tlog.info("dependencies_not_satisfied_ignored", pending=len(failures))

        if existing is None:
            return await self._create(state, tlog, index, raw, cluster_scoped, desired, pending_message)
        return await self._update(
            state, tlog, index, raw, cluster_scoped, desired, existing, pending_message
        )

    async def _revoke(
        self,
        log: Any,
        index: int,
        name: str,
        gvk: GroupVersionKind,
        namespace: str,
        existing: Mapping[str, Any] | None,
        message: str,
        emit_error: BaseException | None,
    ) -> TemplateOutcome:
        """Pending template: make sure no child exists."""
        outcome = TemplateOutcome(
            index,
            name,
            TemplateState.PENDING,
            message=message,
            error=emit_error,
            requeue=emit_error is not None,
        )
        if existing is None:
            return outcome

        try:
            await self.managed.delete(gvk, namespace, name)
        except NotFoundError:
            return outcome
        except PolicySyncError as exc:
            log_template_failure(
                log, "pending_template_delete_failed", category="system", error_type="delete-error", error=exc
            )
            outcome.error = exc
            outcome.requeue = True
            return outcome

        log.info("pending_template_deleted")
        outcome.action = TemplateAction.DELETED
        return outcome

    async def _create(
        self,
        state: _SyncPass,
        log: Any,
        index: int,
        raw: RawObject,
        cluster_scoped: bool,
        desired: dict[str, Any],
        message: str,
    ) -> TemplateOutcome:
        name, gvk = raw.name, raw.gvk
        policy = state.policy
        meta = desired["metadata"]
        if not cluster_scoped:
            meta["ownerReferences"] = [policy.controller_reference()]
        meta["labels"] = template_labels(policy, self.cluster_namespace, meta.get("labels"))
        override_remediation_action(policy, desired)

        try:
            created = await self.managed.create(gvk, desired)
        except PolicySyncError as exc:
            error_message = create_error_message(name, exc)
            await self._emit(
                log,
                self.reporter.error(
                    policy, index, name, error_message, cluster_scoped=cluster_scoped, template=raw
                ),
            )
            invalid = isinstance(exc, InvalidObjectError)
            log_template_failure(
                log,
                "template_create_failed",
                category="user" if invalid else "system",
                error_type="format-error" if invalid else "create-error",
                error=exc,
            )
            # An invalid template only changes with the Policy
            return TemplateOutcome(
                index,
                name,
                TemplateState.ERRORED,
                message=error_message,
                error=exc,
                requeue=not invalid,
            )

        log.info("template_created")
        if not message:
            self.reporter.forget(policy, name)
        error: BaseException | None = None
        if cluster_scoped:
            state.add_finalizer = True
            # ConstraintTemplates have no status of their own to report from
            if is_constraint_template(gvk):
                error = await self._emit(
                    log,
                    self.reporter.success(
                        policy,
                        index,
                        name,
                        f"{gvk.kind} {name} was created successfully",
                        cluster_scoped=True,
                        template=raw,
                    ),
                )

        error = await self._handle_sync_success(log, policy, index, name, gvk, created) or error
        return TemplateOutcome(
            index,
            name,
            TemplateState.SATISFIED,
            TemplateAction.CREATED,
            message=message,
            error=error,
            requeue=error is not None,
        )

    async def _update(
        self,
        state: _SyncPass,
        log: Any,
        index: int,
        raw: RawObject,
        cluster_scoped: bool,
        desired: dict[str, Any],
        existing: dict[str, Any],
        message: str,
    ) -> TemplateOutcome:
        name, gvk = raw.name, raw.gvk
        policy = state.policy
        meta = desired["metadata"]
        existing_meta = existing.get("metadata") or {}
        existing_refs = existing_meta.get("ownerReferences") or []
        parent = (existing_meta.get("labels") or {}).get(PARENT_POLICY_LABEL, "")

        owner_name = existing_refs[0].get("name", "") if existing_refs else ""
        if not cluster_scoped and not owner_name and parent == policy.name:
            meta["ownerReferences"] = [policy.controller_reference()]
            owner_name = policy.name
            log.info("owner_reference_restored")
        elif existing_refs:
            meta["ownerReferences"] = copy.deepcopy(existing_refs)
        else:
            meta.pop("ownerReferences", None)

        if not owner_name:
            owner_name = parent

        if owner_name != policy.name:
            conflict_message = naming_conflict_message(gvk.kind, name, owner_name)
            if owner_name:
                error: PolicySyncError = NamingConflictError(conflict_message)
            else:
                error = AdoptionConflictError(conflict_message)
            await self._emit(
                log,
                self.reporter.error(
                    policy, index, name, conflict_message, cluster_scoped=cluster_scoped, template=raw
                ),
            )
            log_template_failure(
                log, "template_naming_conflict", category="user", error_type="format-error", error=error
            )
            return TemplateOutcome(
                index, name, TemplateState.ERRORED, message=conflict_message, error=error
            )

        meta["labels"] = template_labels(policy, self.cluster_namespace, meta.get("labels"))
        override_remediation_action(policy, desired)

        action = TemplateAction.UNCHANGED
        current = existing
        follow_up: BaseException | None = None
        if not equivalent_templates(existing, desired):
            log.info("template_mismatch")
            current = apply_template(existing, desired)
            try:
                await self.managed.update(gvk, current)
            except ConflictError:
                raise
            except PolicySyncError as exc:
                error_message = f"Failed to update policy template {name}: {exc}"
                await self._emit(
                    log,
                    self.reporter.error(
                        policy,
                        index,
                        name,
                        error_message,
                        cluster_scoped=cluster_scoped,
                        template=raw,
                    ),
                )
                invalid = isinstance(exc, InvalidObjectError)
                log_template_failure(
                    log,
                    "template_update_failed",
                    category="user" if invalid else "system",
                    error_type="format-error" if invalid else "patch-error",
                    error=exc,
                )
                return TemplateOutcome(
                    index,
                    name,
                    TemplateState.ERRORED,
                    message=error_message,
                    error=exc,
                    requeue=not invalid,
                )

            action = TemplateAction.UPDATED
            log.info("template_updated")
            if not message:
                self.reporter.forget(policy, name)
            if cluster_scoped and is_constraint_template(gvk):
                follow_up = await self._emit(
                    log,
                    self.reporter.success(
                        policy,
                        index,
                        name,
                        f"{gvk.kind} {name} was updated successfully",
                        cluster_scoped=True,
                        template=raw,
                    ),
                )
        else:
            log.debug("template_unchanged")

        if cluster_scoped:
            state.add_finalizer = True

        follow_up = await self._handle_sync_success(log, policy, index, name, gvk, current) or follow_up
        return TemplateOutcome(
            index,
            name,
            TemplateState.SATISFIED,
            action,
            message=message,
            error=follow_up,
            requeue=follow_up is not None,
        )

    async def _handle_sync_success(
        self,
        log: Any,
        policy: Policy,
        index: int,
        name: str,
        gvk: GroupVersionKind,
        child: Mapping[str, Any],
    ) -> BaseException | None:
        """
        Clear a child's status.compliant after the template recovers.

        Only applies when the latest recorded message for the template was a
        template error or Pending; the policy engine then re-derives and
        re-announces compliance.
        """
        if gvk.group != API_GROUP:
            return None

        latest = policy.status.latest_message(index)
        if "template-error;" not in latest and "Pending;" not in latest:
            return None

        status = child.get("status")
        if not isinstance(status, Mapping) or not status.get("compliant"):
            return None

        namespace = str((child.get("metadata") or {}).get("namespace") or "")
        try:
            await self.managed.patch_status(gvk, namespace, name, _RESET_COMPLIANCE_PATCH)
        except PolicySyncError as exc:
            error = ProviderError(
                f"unable to reset the status of policy template {name}: {exc}",
                details={"template": name},
            )
            log_template_failure(
                log, "template_status_reset_failed", category="system", error_type="patch-error", error=error
            )
            return error

        log.info("template_status_reset")
        return None

    async def _has_template_label(self, mapping: ResourceMapping) -> bool:
        try:
            crd = await self.managed.get(CRD_GVK, "", mapping.crd_name)
        except NotFoundError:
            return False
        labels = (crd.get("metadata") or {}).get("labels") or {}
        return labels.get(POLICY_TYPE_LABEL) == "template"

    async def _register_watches(self, state: _SyncPass, result: TemplateSyncResult) -> None:
        watched = [*state.all_deps.keys(), *state.child_ids]
        try:
            if watched:
                await self.watcher.add_or_update_watcher(state.owner, *watched)
            else:
                await self.watcher.remove_watcher(state.owner)
        except PolicySyncError as exc:
            missing_crd = isinstance(exc, (NotFoundError, MappingNotFoundError))
            log_template_failure(
                state.log,
                "dependency_watch_update_failed",
                category="user" if missing_crd else "system",
                error_type="crd-error" if missing_crd else "client-error",
                error=exc,
            )
            result.fail(exc)

    async def _reconcile_finalizer(self, state: _SyncPass, result: TemplateSyncResult) -> None:
        policy = state.policy
        if not policy.has_clusterwide_finalizer():
            if not state.add_finalizer:
                return
            state.log.info("finalizer_added")
            policy.add_finalizer(CLUSTERWIDE_FINALIZER)
        elif not state.add_finalizer:
            state.log.info("finalizer_removed")
            policy.remove_finalizer(CLUSTERWIDE_FINALIZER)
        else:
            return

        try:
            await self._update_policy(policy)
        except PolicySyncError as exc:
            state.log.error("policy_finalizer_update_failed", error=str(exc))
            result.fail(exc)

    async def _update_policy(self, policy: Policy) -> None:
        await self.managed.update(POLICY_GVK, policy.to_object())

    async def _finalizer_cleanup(self, policy: Policy) -> None:
        """Delete the cluster-scoped children of a Policy that is being deleted."""
        errors: list[str] = []
        for template in policy.templates:
            try:
                raw = RawObject.decode(template.object_definition)
            except TemplateDecodeError as exc:
                # While uninstalling only the valid templates matter
                if not self.uninstall.is_uninstalling:
                    errors.append(f"failed to decode policy template with error: {exc}")
                continue

            if not raw.name:
                continue

            try:
                mapping = await self.managed.resolve_mapping(raw.gvk)
            except MappingNotFoundError:
                # The CRD is gone; garbage collection takes care of it
                continue
            except PolicySyncError as exc:
                errors.append(str(exc))
                continue

            if mapping.namespaced:
                continue

            try:
                await self.managed.delete(raw.gvk, "", raw.name)
            except NotFoundError:
                continue
            except PolicySyncError as exc:
                errors.append(f"failed to delete {raw.kind} with error: {exc}")

        if errors:
            raise ProviderError("; ".join(errors), details={"policy": policy.name})

    async def _cleanup_targets(self, log: Any) -> list[tuple[GroupVersionKind, bool]]:
        """Kinds that may hold children of a Policy, with whether each is namespaced."""
        targets: list[tuple[GroupVersionKind, bool]] = []

        if not self.disable_gatekeeper_sync:
            try:
                constraint_templates = await self.managed.list(CONSTRAINT_TEMPLATE_GVK)
            except PolicySyncError as exc:
                # Gatekeeper may not be installed
                log.debug("constraint_template_cleanup_skipped", error=str(exc))
                constraint_templates = []

            if constraint_templates:
                targets.append((CONSTRAINT_TEMPLATE_GVK, False))
            for ct in constraint_templates:
                names = (((ct.get("spec") or {}).get("crd") or {}).get("spec") or {}).get("names") or {}
                kind = names.get("kind")
                if kind:
                    targets.append((GroupVersionKind(GATEKEEPER_CONSTRAINT_GROUP, "v1beta1", kind), False))

        try:
            crds = await self.managed.list(CRD_GVK, label_selector=f"{POLICY_TYPE_LABEL}=template")
        except PolicySyncError as exc:
            raise ProviderError(f"error listing CRDs with the {POLICY_TYPE_LABEL} label: {exc}") from exc

        for crd in crds:
            spec = crd.get("spec") or {}
            versions = spec.get("versions") or []
            kind = (spec.get("names") or {}).get("kind")
            if not versions or not kind:
                continue
            gvk = GroupVersionKind(spec.get("group", ""), versions[0].get("name", ""), kind)
            targets.append((gvk, spec.get("scope") == "Namespaced"))

        return targets

    async def _cleanup_excess_templates(
        self, policy: Policy, template_names: list[str], log: Any
    ) -> None:
        """Delete children labelled with this Policy that are no longer among its templates."""
        keep = set(template_names)
        selector = f"{PARENT_POLICY_LABEL}={policy.name}"
        errors: list[str] = []

        for gvk, namespaced in await self._cleanup_targets(log):
            namespace = self.cluster_namespace if namespaced else None
            try:
                children = await self.managed.list(gvk, namespace=namespace, label_selector=selector)
            except PolicySyncError as exc:
                errors.append(f"error listing {gvk} objects: {exc}")
                continue

            for child in children:
                child_name = (child.get("metadata") or {}).get("name", "")
                if not child_name or child_name in keep:
                    continue
                try:
                    await self.managed.delete(gvk, namespace or "", child_name)
                except NotFoundError:
                    continue
                except PolicySyncError as exc:
                    errors.append(f"error deleting {gvk} object {child_name}: {exc}")
                    continue
                log.info("excess_template_deleted", kind=gvk.kind, template=child_name)

        if errors:
            raise ProviderError("; ".join(errors), details={"policy": policy.name})

    @staticmethod
    async def _emit(log: Any, report: Awaitable[Any]) -> BaseException | None:
        """Await a status report, logging and returning its failure instead of raising."""
        try:
            await report
        except PolicySyncError as exc:
            log.error("template_status_report_failed", error=str(exc))
            return exc
        return None

"""
Workflow Coordinator - dry runs, execution, checkpoints and resume.

Manages workflow runs through their lifecycle:
pending -> running -> success | error | aborted

Features:
- Built-in and stored templates, or inline drafts that are never stored
- Write policy, prod guardrail and governance checks before real runs
- Strictly sequential item processing through the operation executor
- Checkpoint token on failure so a run can be resumed where it stopped
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure, not_found, to_operation_failure
from speichr.core.models import (
    AlertSeverity,
    AlertSource,
    PreviewAction,
    RetentionDataset,
    SnapshotReason,
    WorkflowExecutionStatus,
    WorkflowKind,
    WorkflowStepStatus,
)
from speichr.core.orchestration.alerts import AlertEmitter
from speichr.core.orchestration.executor import OperationExecutor, resolve_retry_policy
from speichr.core.orchestration.governance import GovernanceContext, GovernanceResolver
from speichr.core.orchestration.guardrails import GuardrailsEngine
from speichr.core.orchestration.keys import SnapshotRecorder
from speichr.core.orchestration.namespaces import NamespaceAdmin, apply_namespace
from speichr.core.orchestration.preview import WorkflowPreviewBuilder
from speichr.core.orchestration.retention import RetentionEnforcer
from speichr.core.ports import (
    CacheGateway,
    WorkflowExecutionRepository,
    WorkflowTemplateRepository,
)
from speichr.core.schemas import (
    ConnectionProfile,
    ConnectionSecret,
    RetryPolicy,
    WorkflowExecutionRecord,
    WorkflowPreview,
    WorkflowPreviewItem,
    WorkflowStepResult,
    WorkflowTemplate,
    WorkflowTemplateDraft,
)
from speichr.core.utils import Clock, new_id, utc_now

logger = structlog.get_logger()

BUILTIN_PREFIX = "builtin-"
_BUILTIN_STAMP = datetime(2026, 2, 17, tzinfo=timezone.utc)

BUILTIN_TEMPLATES = [
    WorkflowTemplate(
        id="builtin-delete-by-pattern",
        name="Delete By Pattern",
        kind=WorkflowKind.DELETE_BY_PATTERN,
        parameters={"pattern": "*", "limit": 100},
        requires_approval_on_prod=True,
        supports_dry_run=True,
        created_at=_BUILTIN_STAMP,
        updated_at=_BUILTIN_STAMP,
    ),
    WorkflowTemplate(
        id="builtin-ttl-normalize",
        name="TTL Normalize",
        kind=WorkflowKind.TTL_NORMALIZE,
        parameters={"pattern": "*", "ttl_seconds": 3600, "limit": 100},
        requires_approval_on_prod=True,
        supports_dry_run=True,
        created_at=_BUILTIN_STAMP,
        updated_at=_BUILTIN_STAMP,
    ),
    WorkflowTemplate(
        id="builtin-warmup-set",
        name="Warmup Set",
        kind=WorkflowKind.WARMUP_SET,
        parameters={"entries": []},
        requires_approval_on_prod=False,
        supports_dry_run=True,
        created_at=_BUILTIN_STAMP,
        updated_at=_BUILTIN_STAMP,
    ),
]

STEP_ACTIONS = {
    PreviewAction.DELETE: "workflow.step.delete",
    PreviewAction.SET_TTL: "workflow.step.ttl",
    PreviewAction.SET_VALUE: "workflow.step.warmup",
}


def is_builtin_template(template_id: str) -> bool:
    return template_id.startswith(BUILTIN_PREFIX)


@dataclass
class StepOutcome:
    """Result of processing a run's items."""
    step_results: list[WorkflowStepResult] = field(default_factory=list)
    error_count: int = 0
    aborted: bool = False
    checkpoint_token: Optional[str] = None
    pending_items: list[WorkflowPreviewItem] = field(default_factory=list)

    @property
    def retry_count(self) -> int:
        return sum(max(0, step.attempts - 1) for step in self.step_results)

    @property
    def status(self) -> WorkflowExecutionStatus:
        if self.error_count == 0:
            return WorkflowExecutionStatus.SUCCESS
        if self.aborted:
            return WorkflowExecutionStatus.ABORTED
        return WorkflowExecutionStatus.ERROR


class WorkflowCoordinator:
    """
    Main workflow execution engine.

    Items are applied strictly in preview order. Each item runs through the
    operation executor with the resolved (and governance-capped) retry
    policy. A run aborts once the share of failed steps exceeds the
    policy's abort_on_error_rate.
    """

    DRY_RUN_STEP = "dry-run"
    ERROR_MESSAGES = {
        WorkflowExecutionStatus.ABORTED: "Workflow aborted by error-rate policy.",
        WorkflowExecutionStatus.ERROR: "One or more workflow steps failed.",
    }

    def __init__(
        self,
        scopes: NamespaceAdmin,
        gateway: CacheGateway,
        templates: WorkflowTemplateRepository,
        executions: WorkflowExecutionRepository,
        preview_builder: WorkflowPreviewBuilder,
        executor: OperationExecutor,
        guardrails: GuardrailsEngine,
        governance: GovernanceResolver,
        snapshot_recorder: SnapshotRecorder,
        retention: RetentionEnforcer,
        emitter: AlertEmitter,
        clock: Clock = utc_now,
    ):
        self.scopes = scopes
        self.gateway = gateway
        self.templates = templates
        self.executions = executions
        self.preview_builder = preview_builder
        self.executor = executor
        self.guardrails = guardrails
        self.governance = governance
        self.snapshot_recorder = snapshot_recorder
        self.retention = retention
        self.emitter = emitter
        self._clock = clock

    # ==========================================================================
    # Templates
    # ==========================================================================

    async def list_templates(self) -> list[WorkflowTemplate]:
        stored = await self.templates.list()
        return sorted([*BUILTIN_TEMPLATES, *stored], key=lambda t: t.name.lower())

    async def create_template(self, draft: WorkflowTemplateDraft) -> WorkflowTemplate:
        now = self._clock()
        template = WorkflowTemplate(
            **draft.model_dump(exclude={"name"}),
            name=draft.name.strip(),
            id=new_id(),
            created_at=now,
            updated_at=now,
        )
        await self.templates.save(template)
        logger.info("workflow_template_created", template_id=template.id, kind=template.kind.value)
        return template

    async def update_template(self, id: str, draft: WorkflowTemplateDraft) -> WorkflowTemplate:
        if is_builtin_template(id):
            raise OperationFailure(
                ErrorCode.UNAUTHORIZED,
                "Built-in workflow templates cannot be modified.",
            )

        existing = await self.templates.find_by_id(id)
        if existing is None:
            raise not_found("Workflow template", id=id)

        template = existing.model_copy(
            update={
                **draft.model_dump(exclude={"name"}),
                "name": draft.name.strip(),
                "updated_at": self._clock(),
            }
        )
        await self.templates.save(template)
        return template

    async def delete_template(self, id: str) -> None:
        if is_builtin_template(id):
            raise OperationFailure(
                ErrorCode.UNAUTHORIZED,
                "Built-in workflow templates cannot be deleted.",
            )
        await self.templates.delete(id)

    async def resolve_template(
        self,
        template_id: Optional[str] = None,
        template: Optional[WorkflowTemplateDraft] = None,
        parameter_overrides: Optional[dict[str, Any]] = None,
    ) -> tuple[WorkflowTemplate, dict[str, Any]]:
        """
        Template entity plus merged parameters.

        Raises:
            OperationFailure: VALIDATION_ERROR when neither is given or the
                id is unknown
        """
        if template_id:
            resolved = next((t for t in BUILTIN_TEMPLATES if t.id == template_id), None)
            if resolved is None:
                resolved = await self.templates.find_by_id(template_id)
            if resolved is None:
                raise not_found("Workflow template", id=template_id)
        elif template is not None:
            now = self._clock()
            resolved = WorkflowTemplate(
                **template.model_dump(),
                id=f"inline-{new_id()}",
                created_at=now,
                updated_at=now,
            )
        else:
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "Either template_id or template must be provided.",
            )

        return resolved, {**resolved.parameters, **(parameter_overrides or {})}

    # ==========================================================================
    # Preview
    # ==========================================================================

    async def preview(
        self,
        connection_id: str,
        template_id: Optional[str] = None,
        template: Optional[WorkflowTemplateDraft] = None,
        parameter_overrides: Optional[dict[str, Any]] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        namespace_id: Optional[str] = None,
    ) -> WorkflowPreview:
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        resolved, parameters = await self.resolve_template(
            template_id, template, parameter_overrides
        )
        return await self.preview_builder.build(
            profile,
            secret,
            resolved.kind,
            apply_namespace(resolved.kind, parameters, scope.namespace),
            cursor=cursor,
            limit=limit,
        )

    # ==========================================================================
    # Execution
    # ==========================================================================

    async def execute(
        self,
        connection_id: str,
        template_id: Optional[str] = None,
        template: Optional[WorkflowTemplateDraft] = None,
        parameter_overrides: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
        guardrail_confirmed: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        namespace_id: Optional[str] = None,
    ) -> WorkflowExecutionRecord:
        """
        Run a workflow against a connection.

        Args:
            connection_id: Target connection
            template_id: Built-in or stored template id
            template: Inline draft, used when no template_id is given
            parameter_overrides: Merged over the template parameters
            dry_run: Preview only, no mutation and no governance check
            guardrail_confirmed: Explicit confirmation for prod connections
            retry_policy: Per-step retry override
            namespace_id: Run inside a namespace of the connection

        Returns:
            The finished WorkflowExecutionRecord

        Raises:
            OperationFailure: VALIDATION_ERROR for unknown template,
                connection or namespace, UNAUTHORIZED when a gate denies
                the run
        """
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        resolved, parameters = await self.resolve_template(
            template_id, template, parameter_overrides
        )

        if not dry_run:
            await self.guardrails.enforce_writable(profile, "workflow.execute", resolved.name)

        if resolved.requires_approval_on_prod:
            await self.guardrails.enforce_prod_guardrail(
                profile, "workflow.execute", resolved.name, guardrail_confirmed
            )

        context = (
            GovernanceContext()
            if dry_run
            else await self.governance.resolve(profile, "workflow.execute")
        )

        execution = WorkflowExecutionRecord(
            id=new_id(),
            workflow_template_id=template_id,
            workflow_name=resolved.name,
            workflow_kind=resolved.kind,
            connection_id=profile.id,
            namespace_id=scope.namespace.id if scope.namespace else None,
            started_at=self._clock(),
            status=WorkflowExecutionStatus.RUNNING,
            dry_run=dry_run,
            parameters=parameters,
            policy_pack_id=context.policy_pack_id,
            schedule_window_id=context.active_window_id,
        )
        await self.executions.save(execution)
        logger.info(
            "workflow_started",
            execution_id=execution.id,
            kind=resolved.kind.value,
            connection_id=profile.id,
            dry_run=dry_run,
        )

        preview = await self.preview_builder.build(
            profile,
            secret,
            resolved.kind,
            apply_namespace(resolved.kind, parameters, scope.namespace),
            limit=context.item_limit(),
        )

        if dry_run:
            completed = execution.model_copy(
                update={
                    "finished_at": self._clock(),
                    "status": WorkflowExecutionStatus.SUCCESS,
                    "step_results": [
                        WorkflowStepResult(
                            step=self.DRY_RUN_STEP,
                            status=WorkflowStepStatus.SUCCESS,
                            attempts=1,
                            duration_ms=0,
                            message=f"Previewed {preview.estimated_count} item(s).",
                        )
                    ],
                }
            )
            await self.executions.save(completed)
            await self.retention.enforce([RetentionDataset.WORKFLOW_HISTORY])
            return completed

        policy = resolve_retry_policy(profile, retry_policy)
        policy.max_attempts = context.cap_attempts(policy.max_attempts)

        outcome = await self.run_items(profile, secret, preview.items, policy)
        return await self._finish(execution, outcome, profile)

    async def resume(
        self,
        execution_id: str,
        guardrail_confirmed: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> WorkflowExecutionRecord:
        """
        Continue a failed run from its checkpoint.

        Gates are re-checked against the current time. The items the
        failed run never reached are replayed as stored; the backend is not
        re-queried, since earlier steps may already have changed which keys
        match. The new record links back to the original.

        Raises:
            OperationFailure: VALIDATION_ERROR for an unknown execution,
                CONFLICT when there is nothing to resume
        """
        execution = await self.executions.find_by_id(execution_id)
        if execution is None:
            raise not_found("Workflow execution record", id=execution_id)

        if execution.status == WorkflowExecutionStatus.SUCCESS or not execution.checkpoint_token:
            raise OperationFailure(
                ErrorCode.CONFLICT,
                "This workflow execution does not have a resumable checkpoint.",
                False,
                {"executionId": execution.id, "status": execution.status.value},
            )

        profile, secret, _ = await self.scopes.resolve(
            execution.connection_id, execution.namespace_id
        )
        await self.guardrails.enforce_writable(profile, "workflow.resume", execution.workflow_name)
        await self.guardrails.enforce_prod_guardrail(
            profile, "workflow.resume", execution.workflow_name, guardrail_confirmed
        )
        context = await self.governance.resolve(profile, "workflow.resume")

        items = execution.pending_items[: context.item_limit()]
        if not items:
            raise OperationFailure(
                ErrorCode.CONFLICT,
                "No workflow items are pending for this checkpoint.",
                False,
                {"executionId": execution.id, "checkpointToken": execution.checkpoint_token},
            )

        resumed = WorkflowExecutionRecord(
            id=new_id(),
            workflow_template_id=execution.workflow_template_id,
            workflow_name=execution.workflow_name,
            workflow_kind=execution.workflow_kind,
            connection_id=execution.connection_id,
            namespace_id=execution.namespace_id,
            started_at=self._clock(),
            status=WorkflowExecutionStatus.RUNNING,
            dry_run=False,
            parameters=execution.parameters,
            policy_pack_id=context.policy_pack_id or execution.policy_pack_id,
            schedule_window_id=context.active_window_id or execution.schedule_window_id,
            resumed_from_execution_id=execution.id,
        )
        await self.executions.save(resumed)
        logger.info(
            "workflow_resumed",
            execution_id=resumed.id,
            resumed_from=execution.id,
            pending=len(items),
        )

        policy = resolve_retry_policy(profile, retry_policy)
        policy.max_attempts = context.cap_attempts(policy.max_attempts)

        outcome = await self.run_items(profile, secret, items, policy)
        return await self._finish(resumed, outcome, profile)

    async def rerun(
        self,
        execution_id: str,
        parameter_overrides: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
        guardrail_confirmed: bool = False,
    ) -> WorkflowExecutionRecord:
        """Fresh run from the first item with the original template."""
        execution = await self.executions.find_by_id(execution_id)
        if execution is None:
            raise not_found("Workflow execution record", id=execution_id)

        inline = None
        if not execution.workflow_template_id:
            inline = WorkflowTemplateDraft(
                name=execution.workflow_name,
                kind=execution.workflow_kind,
                parameters=execution.parameters,
                requires_approval_on_prod=True,
                supports_dry_run=True,
            )

        return await self.execute(
            connection_id=execution.connection_id,
            template_id=execution.workflow_template_id,
            template=inline,
            parameter_overrides=parameter_overrides,
            dry_run=dry_run,
            guardrail_confirmed=guardrail_confirmed,
            namespace_id=execution.namespace_id,
        )

    async def list_executions(
        self,
        connection_id: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowExecutionRecord]:
        return await self.executions.list(
            connection_id=connection_id, template_id=template_id, limit=limit
        )

    async def get_execution(self, id: str) -> WorkflowExecutionRecord:
        execution = await self.executions.find_by_id(id)
        if execution is None:
            raise not_found("Workflow execution", id=id)
        return execution

    # ==========================================================================
    # Item processing
    # ==========================================================================

    async def run_items(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        items: list[WorkflowPreviewItem],
        policy: RetryPolicy,
    ) -> StepOutcome:
        """
        Apply items in order.

        On each failure the checkpoint moves to the next index (when items
        remain) and the run stops once failed/processed steps exceeds the
        policy's abort_on_error_rate. Items left unprocessed behind a
        checkpoint are kept on the outcome for resume.
        """
        outcome = StepOutcome()
        next_index = 0

        for index, item in enumerate(items):
            next_index = index + 1
            step = f"{item.action.value}:{item.key}"
            started = self._clock()

            try:
                result = await self.executor.run(
                    profile,
                    STEP_ACTIONS[item.action],
                    item.key,
                    lambda item=item: self._apply_item(profile, secret, item),
                    retry_policy=policy,
                )
                outcome.step_results.append(
                    WorkflowStepResult(
                        step=step,
                        status=WorkflowStepStatus.SUCCESS,
                        attempts=result.attempts,
                        duration_ms=self._elapsed_ms(started),
                    )
                )
            except Exception as e:
                failure = to_operation_failure(e)
                outcome.error_count += 1
                attempts = failure.details.get("attempts")
                if isinstance(attempts, bool) or not isinstance(attempts, int):
                    attempts = policy.max_attempts

                outcome.step_results.append(
                    WorkflowStepResult(
                        step=step,
                        status=WorkflowStepStatus.ERROR,
                        attempts=attempts,
                        duration_ms=self._elapsed_ms(started),
                        message=failure.message,
                    )
                )
                logger.warning(
                    "workflow_step_failed",
                    connection_id=profile.id,
                    step=step,
                    attempts=attempts,
                    error=failure.message,
                )

                if index + 1 < len(items):
                    outcome.checkpoint_token = str(index + 1)

                if outcome.error_count / len(outcome.step_results) > policy.abort_on_error_rate:
                    outcome.aborted = True
                    break

        if outcome.checkpoint_token is not None:
            outcome.pending_items = list(items[next_index:])
        return outcome

    async def _apply_item(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        item: WorkflowPreviewItem,
    ) -> None:
        if item.action == PreviewAction.DELETE:
            await self.snapshot_recorder.capture(
                profile, secret, item.key, SnapshotReason.WORKFLOW
            )
            await self.gateway.delete_key(profile, secret, item.key)
        elif item.action == PreviewAction.SET_TTL:
            current = await self.gateway.get_value(profile, secret, item.key)
            if current.value is None:
                return
            await self.gateway.set_value(
                profile, secret, item.key, current.value, item.next_ttl_seconds
            )
        else:
            await self.gateway.set_value(
                profile, secret, item.key, item.value_preview or "", item.next_ttl_seconds
            )

    async def _finish(
        self,
        execution: WorkflowExecutionRecord,
        outcome: StepOutcome,
        profile: ConnectionProfile,
    ) -> WorkflowExecutionRecord:
        status = outcome.status
        succeeded = status == WorkflowExecutionStatus.SUCCESS

        result = execution.model_copy(
            update={
                "finished_at": self._clock(),
                "status": status,
                "retry_count": outcome.retry_count,
                "step_results": outcome.step_results,
                "checkpoint_token": None if succeeded else outcome.checkpoint_token,
                "pending_items": [] if succeeded else outcome.pending_items,
                "error_message": self.ERROR_MESSAGES.get(status),
            }
        )
        await self.executions.save(result)
        await self.retention.enforce([RetentionDataset.WORKFLOW_HISTORY])

        if not succeeded:
            await self.emitter.emit(
                severity=(
                    AlertSeverity.CRITICAL
                    if status == WorkflowExecutionStatus.ABORTED
                    else AlertSeverity.WARNING
                ),
                title=f"Workflow {status.value}",
                message=f"{execution.workflow_name} completed with status: {status.value}.",
                source=AlertSource.WORKFLOW,
                connection_id=profile.id,
                environment=profile.environment,
            )

        logger.info(
            "workflow_completed",
            execution_id=result.id,
            status=status.value,
            steps=len(outcome.step_results),
            errors=outcome.error_count,
            checkpoint=result.checkpoint_token,
        )
        return result

    def _elapsed_ms(self, started: datetime) -> int:
        return max(0, round((self._clock() - started).total_seconds() * 1000))

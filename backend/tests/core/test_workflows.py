"""
Workflow Coordinator Tests
==========================

Execution, checkpoints, resume, governance gating and templates.
"""

import pytest

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.gateway import InMemoryCacheGateway
from speichr.core.models import (
    AlertSeverity,
    CacheEngine,
    EnvironmentTag,
    Weekday,
    WorkflowExecutionStatus,
    WorkflowKind,
    WorkflowStepStatus,
)
from speichr.core.schemas import (
    ConnectionDraft,
    ConnectionSecret,
    ExecutionWindow,
    GovernancePolicyPackDraft,
    RetryPolicy,
    WorkflowTemplateDraft,
)
from speichr.core.service import SpeichrService

DELETE_TEMPLATE = "builtin-delete-by-pattern"
TTL_TEMPLATE = "builtin-ttl-normalize"


class RecordingGateway(InMemoryCacheGateway):
    """Records successful deletes; fails configured keys."""

    def __init__(self, clock, failing_keys=()):
        super().__init__(clock)
        self.failing_keys = set(failing_keys)
        self.deleted: list[str] = []

    async def delete_key(self, profile, secret, key):
        if key in self.failing_keys:
            raise RuntimeError("planned workflow failure")
        self.deleted.append(key)
        await super().delete_key(profile, secret, key)


class FlakyGateway(InMemoryCacheGateway):
    """Every key's first delete attempt fails, the second succeeds."""

    def __init__(self, clock):
        super().__init__(clock)
        self.delete_calls: dict[str, int] = {}

    async def delete_key(self, profile, secret, key):
        self.delete_calls[key] = self.delete_calls.get(key, 0) + 1
        if self.delete_calls[key] == 1:
            raise RuntimeError("connection reset")
        await super().delete_key(profile, secret, key)


def prod_draft(**overrides) -> ConnectionDraft:
    values = {
        "name": "Jobs Redis",
        "engine": CacheEngine.REDIS,
        "host": "jobs.internal",
        "port": 6379,
        "environment": EnvironmentTag.PROD,
    }
    values.update(overrides)
    return ConnectionDraft(**values)


@pytest.fixture
def recording_gateway(clock) -> RecordingGateway:
    return RecordingGateway(clock, failing_keys={"job:2"})


@pytest.fixture
def recording_service(repos, recording_gateway, clock, sleeper, tmp_path) -> SpeichrService:
    return SpeichrService(
        repositories=repos,
        gateway=recording_gateway,
        export_dir=str(tmp_path),
        clock=clock,
        sleep=sleeper,
    )


@pytest.fixture
async def jobs_connection(recording_service, recording_gateway):
    profile = await recording_service.create_connection(
        prod_draft(retry_abort_on_error_rate=0.4),
        ConnectionSecret(password="secret"),
    )
    recording_gateway.seed(profile.id, {"job:1": "a", "job:2": "b", "job:3": "c"})
    return profile


# ==========================================================================
# Checkpoint & Resume
# ==========================================================================

class TestCheckpointResume:
    """Tests for failed runs and resuming from their checkpoint."""

    async def test_failed_step_aborts_with_checkpoint(
        self, recording_service, recording_gateway, jobs_connection
    ):
        """A failure past the abort rate stops the run and stores the next index."""
        execution = await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            guardrail_confirmed=True,
        )

        assert execution.status == WorkflowExecutionStatus.ABORTED
        assert execution.checkpoint_token == "2"
        assert [s.step for s in execution.step_results] == ["delete:job:1", "delete:job:2"]
        failed = execution.step_results[1]
        assert failed.status == WorkflowStepStatus.ERROR
        assert failed.attempts == 1
        assert failed.message == "planned workflow failure"
        assert execution.retry_count == 0
        assert execution.error_message == "Workflow aborted by error-rate policy."
        assert recording_gateway.deleted == ["job:1"]
        assert [item.key for item in execution.pending_items] == ["job:3"]

        stored = await recording_service.workflows.get_execution(execution.id)
        assert stored.status == WorkflowExecutionStatus.ABORTED

    async def test_abort_raises_critical_alert(self, recording_service, jobs_connection):
        """An aborted run emits a critical workflow alert."""
        await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            guardrail_confirmed=True,
        )

        alerts = await recording_service.list_alerts()
        workflow_alerts = [a for a in alerts if a.title == "Workflow aborted"]
        assert len(workflow_alerts) == 1
        assert workflow_alerts[0].severity == AlertSeverity.CRITICAL

    async def test_resume_continues_from_checkpoint(
        self, recording_service, recording_gateway, jobs_connection
    ):
        """Resume processes only the items the failed run never reached."""
        failed = await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            guardrail_confirmed=True,
        )

        resumed = await recording_service.workflows.resume(failed.id, guardrail_confirmed=True)

        assert resumed.status == WorkflowExecutionStatus.SUCCESS
        assert [s.step for s in resumed.step_results] == ["delete:job:3"]
        assert resumed.resumed_from_execution_id == failed.id
        assert resumed.checkpoint_token is None
        assert resumed.pending_items == []
        assert recording_gateway.deleted == ["job:1", "job:3"]
        remaining = await recording_gateway.search_keys(
            jobs_connection, ConnectionSecret(password="secret"), "job:*"
        )
        assert remaining.keys == ["job:2"]

    async def test_resume_replays_every_pending_item(
        self, recording_service, recording_gateway, jobs_connection
    ):
        """Deletes before the checkpoint do not shift which items are resumed."""
        recording_gateway.seed(
            jobs_connection.id,
            {"job:1": "a", "job:2": "b", "job:3": "c", "job:4": "d", "job:5": "e"},
        )
        failed = await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            guardrail_confirmed=True,
        )
        assert failed.status == WorkflowExecutionStatus.ABORTED
        assert failed.checkpoint_token == "2"
        assert [item.key for item in failed.pending_items] == ["job:3", "job:4", "job:5"]

        resumed = await recording_service.workflows.resume(failed.id, guardrail_confirmed=True)

        assert [s.step for s in resumed.step_results] == [
            "delete:job:3",
            "delete:job:4",
            "delete:job:5",
        ]
        assert recording_gateway.deleted == ["job:1", "job:3", "job:4", "job:5"]
        remaining = await recording_gateway.search_keys(
            jobs_connection, ConnectionSecret(password="secret"), "job:*"
        )
        assert remaining.keys == ["job:2"]

    async def test_resume_requires_prod_confirmation(self, recording_service, jobs_connection):
        """The prod guardrail is re-checked on resume."""
        failed = await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            guardrail_confirmed=True,
        )

        with pytest.raises(OperationFailure) as exc_info:
            await recording_service.workflows.resume(failed.id)

        assert exc_info.value.code == ErrorCode.UNAUTHORIZED

    async def test_resume_successful_run_conflicts(self, service, make_connection, gateway):
        """A run without a checkpoint cannot be resumed."""
        profile = await make_connection()
        gateway.seed(profile.id, {"cache:1": "x"})
        execution = await service.workflows.execute(
            profile.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "cache:*"},
        )

        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.resume(execution.id)

        assert exc_info.value.code == ErrorCode.CONFLICT

    async def test_resume_unknown_execution(self, service):
        """Resuming an unknown execution is a validation error."""
        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.resume("missing")

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


# ==========================================================================
# Governance
# ==========================================================================

class TestWorkflowGovernance:
    """Tests for policy pack gating of workflow runs."""

    @staticmethod
    def pack_draft(window: ExecutionWindow, **overrides) -> GovernancePolicyPackDraft:
        values = {
            "name": "Prod maintenance",
            "environments": [EnvironmentTag.PROD],
            "max_retry_attempts": 1,
            "scheduling_enabled": True,
            "execution_windows": [window],
        }
        values.update(overrides)
        return GovernancePolicyPackDraft(**values)

    async def test_outside_window_then_inside(
        self, recording_service, recording_gateway, jobs_connection, sleeper
    ):
        """A closed window denies the run; an open one tags it and caps retries."""
        pack = await recording_service.governance.create_pack(
            self.pack_draft(
                ExecutionWindow(
                    id="friday-window",
                    weekdays=[Weekday.FRI],
                    start_time="00:00",
                    end_time="23:59",
                )
            )
        )
        await recording_service.governance.assign(jobs_connection.id, pack.id)

        with pytest.raises(OperationFailure) as exc_info:
            await recording_service.workflows.execute(
                jobs_connection.id,
                template_id=DELETE_TEMPLATE,
                parameter_overrides={"pattern": "job:*"},
                guardrail_confirmed=True,
            )
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
        assert exc_info.value.details["policyPackId"] == pack.id
        assert recording_gateway.deleted == []

        await recording_service.governance.update_pack(
            pack.id,
            self.pack_draft(
                ExecutionWindow(
                    id="active-window",
                    weekdays=[Weekday.WED],
                    start_time="00:00",
                    end_time="23:59",
                )
            ),
        )

        execution = await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            guardrail_confirmed=True,
            retry_policy=RetryPolicy(max_attempts=5, backoff_ms=0, abort_on_error_rate=1.0),
        )

        assert execution.policy_pack_id == pack.id
        assert execution.schedule_window_id == "active-window"
        assert execution.status == WorkflowExecutionStatus.ERROR
        failed = next(s for s in execution.step_results if s.status == WorkflowStepStatus.ERROR)
        assert failed.attempts == 1
        assert sleeper.calls == []

    async def test_environment_not_allowed(self, recording_service, jobs_connection):
        """A pack that excludes the connection's environment denies the run."""
        pack = await recording_service.governance.create_pack(
            GovernancePolicyPackDraft(name="Staging only", environments=[EnvironmentTag.STAGING])
        )
        await recording_service.governance.assign(jobs_connection.id, pack.id)

        with pytest.raises(OperationFailure) as exc_info:
            await recording_service.workflows.execute(
                jobs_connection.id,
                template_id=DELETE_TEMPLATE,
                parameter_overrides={"pattern": "job:*"},
                guardrail_confirmed=True,
            )

        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
        assert exc_info.value.details["environment"] == "prod"

    async def test_dry_run_skips_governance(self, recording_service, jobs_connection):
        """Dry runs are never blocked by execution windows."""
        pack = await recording_service.governance.create_pack(
            self.pack_draft(
                ExecutionWindow(
                    id="friday-window",
                    weekdays=[Weekday.FRI],
                    start_time="00:00",
                    end_time="23:59",
                )
            )
        )
        await recording_service.governance.assign(jobs_connection.id, pack.id)

        execution = await recording_service.workflows.execute(
            jobs_connection.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "job:*"},
            dry_run=True,
            guardrail_confirmed=True,
        )

        assert execution.status == WorkflowExecutionStatus.SUCCESS
        assert execution.policy_pack_id is None

    async def test_pack_caps_item_count(self, service, make_connection, gateway):
        """max_workflow_items limits how many items a run touches."""
        profile = await make_connection()
        gateway.seed(profile.id, {f"user:{i}": "v" for i in range(5)})
        pack = await service.governance.create_pack(
            GovernancePolicyPackDraft(
                name="Small batches",
                environments=[EnvironmentTag.DEV],
                max_workflow_items=2,
            )
        )
        await service.governance.assign(profile.id, pack.id)

        execution = await service.workflows.execute(
            profile.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "user:*"},
        )

        assert execution.status == WorkflowExecutionStatus.SUCCESS
        assert len(execution.step_results) == 2
        remaining = await gateway.search_keys(profile, ConnectionSecret(), "user:*")
        assert len(remaining.keys) == 3


# ==========================================================================
# Execution
# ==========================================================================

class TestWorkflowExecution:
    """Tests for plain workflow runs."""

    async def test_dry_run_does_not_mutate(self, service, make_connection, gateway):
        """A dry run records a single preview step and leaves keys alone."""
        profile = await make_connection()
        gateway.seed(profile.id, {"session:1": "a", "session:2": "b", "session:3": "c"})

        execution = await service.workflows.execute(
            profile.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "session:*"},
            dry_run=True,
        )

        assert execution.dry_run is True
        assert execution.status == WorkflowExecutionStatus.SUCCESS
        assert len(execution.step_results) == 1
        assert execution.step_results[0].step == "dry-run"
        assert execution.step_results[0].message == "Previewed 3 item(s)."
        remaining = await gateway.search_keys(profile, ConnectionSecret(), "session:*")
        assert len(remaining.keys) == 3

    async def test_delete_run_captures_snapshots(self, service, make_connection, gateway):
        """Deleted keys can be restored from their workflow snapshots."""
        profile = await make_connection()
        gateway.seed(profile.id, {"session:1": "a"})

        execution = await service.workflows.execute(
            profile.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "session:*"},
        )

        assert execution.status == WorkflowExecutionStatus.SUCCESS
        snapshots = await service.keys.list_snapshots(profile.id, key="session:1")
        assert len(snapshots) == 1
        assert snapshots[0].value == "a"

    async def test_retry_count_sums_extra_attempts(
        self, repos, clock, sleeper, tmp_path
    ):
        """retry_count equals the sum of attempts beyond the first per step."""
        flaky = FlakyGateway(clock)
        service = SpeichrService(repos, flaky, export_dir=str(tmp_path), clock=clock, sleep=sleeper)
        profile = await service.create_connection(
            prod_draft(environment=EnvironmentTag.DEV),
            ConnectionSecret(password="secret"),
        )
        flaky.seed(profile.id, {"a": "1", "b": "2"})

        execution = await service.workflows.execute(
            profile.id,
            template_id=DELETE_TEMPLATE,
            parameter_overrides={"pattern": "*"},
            retry_policy=RetryPolicy(max_attempts=3, backoff_ms=10),
        )

        assert execution.status == WorkflowExecutionStatus.SUCCESS
        assert [s.attempts for s in execution.step_results] == [2, 2]
        assert execution.retry_count == sum(s.attempts - 1 for s in execution.step_results)
        assert execution.retry_count == 2
        assert sleeper.calls == [0.01, 0.01]

    async def test_prod_requires_confirmation(self, recording_service, jobs_connection):
        """Templates needing approval on prod are denied without confirmation."""
        with pytest.raises(OperationFailure) as exc_info:
            await recording_service.workflows.execute(
                jobs_connection.id,
                template_id=DELETE_TEMPLATE,
                parameter_overrides={"pattern": "job:*"},
            )

        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
        assert exc_info.value.details["policy"] == "prodGuardrail"

    async def test_read_only_blocks_real_run(self, service, make_connection):
        """Read-only connections allow dry runs only."""
        profile = await make_connection(read_only=True)

        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.execute(profile.id, template_id=DELETE_TEMPLATE)
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED

        execution = await service.workflows.execute(
            profile.id, template_id=DELETE_TEMPLATE, dry_run=True
        )
        assert execution.status == WorkflowExecutionStatus.SUCCESS

    async def test_ttl_normalize_applies_ttl(self, service, make_connection, gateway):
        """TTL normalization rewrites keys with the configured TTL."""
        profile = await make_connection()
        gateway.seed(profile.id, {"feed:1": "x"})

        execution = await service.workflows.execute(
            profile.id,
            template_id=TTL_TEMPLATE,
            parameter_overrides={"pattern": "feed:*", "ttl_seconds": 120},
        )

        assert execution.status == WorkflowExecutionStatus.SUCCESS
        record = await gateway.get_value(profile, ConnectionSecret(), "feed:1")
        assert record.value == "x"
        assert record.ttl_seconds == 120

    async def test_inline_warmup_and_rerun(self, service, make_connection, gateway):
        """Inline templates are never stored and can still be rerun."""
        profile = await make_connection()
        draft = WorkflowTemplateDraft(
            name="Warm homepage",
            kind=WorkflowKind.WARMUP_SET,
            parameters={"entries": [{"key": "home:hero", "value": "<div>", "ttl_seconds": 60}]},
        )

        first = await service.workflows.execute(profile.id, template=draft)

        assert first.workflow_template_id is None
        assert first.status == WorkflowExecutionStatus.SUCCESS
        assert [t.name for t in await service.repositories.templates.list()] == []
        record = await gateway.get_value(profile, ConnectionSecret(), "home:hero")
        assert record.value == "<div>"

        await gateway.delete_key(profile, ConnectionSecret(), "home:hero")
        rerun = await service.workflows.rerun(first.id)

        assert rerun.id != first.id
        assert rerun.workflow_name == "Warm homepage"
        record = await gateway.get_value(profile, ConnectionSecret(), "home:hero")
        assert record.value == "<div>"

    async def test_requires_template(self, service, make_connection):
        """Either a template id or an inline template must be given."""
        profile = await make_connection()

        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.execute(profile.id)

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    async def test_unknown_connection(self, service):
        """Executing against an unknown connection is a validation error."""
        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.execute("missing", template_id=DELETE_TEMPLATE)

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    async def test_list_executions_filters_by_connection(self, service, make_connection):
        """Execution history is listed per connection, newest first."""
        first = await make_connection(name="First")
        second = await make_connection(name="Second")
        await service.workflows.execute(first.id, template_id=DELETE_TEMPLATE, dry_run=True)
        await service.workflows.execute(second.id, template_id=DELETE_TEMPLATE, dry_run=True)

        listed = await service.workflows.list_executions(connection_id=first.id)

        assert len(listed) == 1
        assert listed[0].connection_id == first.id


# ==========================================================================
# Templates
# ==========================================================================

class TestWorkflowTemplates:
    """Tests for template management."""

    async def test_builtins_listed(self, service):
        """Built-in templates are always available."""
        templates = await service.workflows.list_templates()

        ids = {t.id for t in templates}
        assert {"builtin-delete-by-pattern", "builtin-ttl-normalize", "builtin-warmup-set"} <= ids

    async def test_builtins_are_immutable(self, service):
        """Built-in templates cannot be updated or deleted."""
        draft = WorkflowTemplateDraft(name="Hacked", kind=WorkflowKind.DELETE_BY_PATTERN)

        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.update_template(DELETE_TEMPLATE, draft)
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED

        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.delete_template(DELETE_TEMPLATE)
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED

    async def test_stored_template_lifecycle(self, service, clock):
        """Stored templates can be created, updated and deleted."""
        created = await service.workflows.create_template(
            WorkflowTemplateDraft(
                name="  Purge sessions ",
                kind=WorkflowKind.DELETE_BY_PATTERN,
                parameters={"pattern": "session:*"},
            )
        )
        assert created.name == "Purge sessions"

        clock.advance(minutes=1)
        updated = await service.workflows.update_template(
            created.id,
            WorkflowTemplateDraft(
                name="Purge old sessions",
                kind=WorkflowKind.DELETE_BY_PATTERN,
                parameters={"pattern": "session:old:*"},
            ),
        )
        assert updated.parameters == {"pattern": "session:old:*"}
        assert updated.updated_at > created.updated_at

        await service.workflows.delete_template(created.id)
        ids = {t.id for t in await service.workflows.list_templates()}
        assert created.id not in ids

    async def test_update_unknown_template(self, service):
        """Updating a missing template is a validation error."""
        draft = WorkflowTemplateDraft(name="Missing", kind=WorkflowKind.TTL_NORMALIZE)

        with pytest.raises(OperationFailure) as exc_info:
            await service.workflows.update_template("missing", draft)

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

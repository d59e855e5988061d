"""
Incident Export - bundles of timeline, alerts, diagnostics and metrics.

A bundle is a single JSON artifact covering a time range:
{metadata, timeline, logs, diagnostics, metrics}. Exports run either
inline (export) or as background jobs that move through the stages

    queued -> collecting -> serializing -> writing -> persisting -> completed

Job cancellation is cooperative: the job's cancel event is checked after
every stage transition.
"""

import asyncio
import hashlib
import json
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure, not_found
from speichr.core.models import (
    IncidentExportStage,
    IncidentExportStatus,
    IncidentSection,
    OperationStatus,
    RedactionProfile,
    RetentionDataset,
)
from speichr.core.orchestration.alerts import METRIC_SAMPLE_LIMIT
from speichr.core.orchestration.observability import related_events_of, retry_attempts_of
from speichr.core.orchestration.retention import RetentionEnforcer
from speichr.core.ports import (
    AlertRepository,
    HistoryRepository,
    IncidentBundleRepository,
    ObservabilityRepository,
)
from speichr.core.schemas import (
    AlertEvent,
    FailedOperationDiagnostic,
    HistoryEvent,
    IncidentBundle,
    IncidentBundlePreview,
    IncidentBundleRequest,
    IncidentExportJob,
    IncidentManifest,
    ObservabilitySnapshot,
)
from speichr.core.utils import Clock, ensure_utc, new_id, utc_now

logger = structlog.get_logger()

# Estimated serialized size per record, by section
ESTIMATED_BYTES = {
    IncidentSection.TIMELINE: 520,
    IncidentSection.LOGS: 340,
    IncidentSection.DIAGNOSTICS: 780,
    IncidentSection.METRICS: 220,
}

STAGE_PROGRESS = {
    IncidentExportStage.COLLECTING: 10,
    IncidentExportStage.SERIALIZING: 45,
    IncidentExportStage.WRITING: 70,
    IncidentExportStage.PERSISTING: 90,
    IncidentExportStage.COMPLETED: 100,
}


class ExportCancelled(Exception):
    """Raised inside a job when cancellation was requested."""

    def __init__(self):
        super().__init__("Incident bundle export was cancelled.")


def redact_message(message: str) -> str:
    if len(message) <= 24:
        return "[redacted]"
    return f"{message[:8]}...[redacted]...{message[-8:]}"


def compute_checksum(payload: dict[str, Any]) -> str:
    """SHA-256 over the artifact payload with metadata.checksum blanked."""
    blank = {**payload, "metadata": {**payload["metadata"], "checksum": ""}}
    encoded = json.dumps(blank, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def verify_artifact(path: str) -> bool:
    """True when an artifact's stored checksum matches its content."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return payload["metadata"]["checksum"] == compute_checksum(payload)


@dataclass
class IncidentCollection:
    connection_ids: list[str]
    timeline: list[HistoryEvent] = field(default_factory=list)
    logs: list[AlertEvent] = field(default_factory=list)
    diagnostics: list[FailedOperationDiagnostic] = field(default_factory=list)
    metrics: list[ObservabilitySnapshot] = field(default_factory=list)
    truncated: bool = False


@dataclass
class _JobState:
    job: IncidentExportJob
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


StageCallback = Callable[[IncidentExportStage], None]


class IncidentExportManager:
    """
    Builds incident bundles and runs background export jobs.

    Jobs live in process memory; bundle metadata is persisted through the
    incident bundle repository.
    """

    def __init__(
        self,
        history: HistoryRepository,
        observability: ObservabilityRepository,
        alerts: AlertRepository,
        bundles: IncidentBundleRepository,
        retention: RetentionEnforcer,
        export_dir: Optional[str] = None,
        clock: Clock = utc_now,
    ):
        self.history = history
        self.observability = observability
        self.alerts = alerts
        self.bundles = bundles
        self.retention = retention
        self.export_dir = export_dir or tempfile.gettempdir()
        self._clock = clock
        self._jobs: dict[str, _JobState] = {}

    def default_destination(self, bundle_id: str) -> str:
        return str(Path(self.export_dir) / f"speichr-incident-{bundle_id}.json")

    # ==========================================================================
    # Collection & preview
    # ==========================================================================

    async def collect(self, request: IncidentBundleRequest) -> IncidentCollection:
        """Sample every section for the request's range and connections."""
        since, until = ensure_utc(request.since), ensure_utc(request.until)
        wanted = set(request.connection_ids)
        direct = request.connection_ids[0] if len(request.connection_ids) == 1 else None
        query_limit = METRIC_SAMPLE_LIMIT + 1

        def in_scope(connection_id: Optional[str]) -> bool:
            if not wanted:
                return True
            return connection_id is not None and connection_id in wanted

        timeline_sample = await self.history.query(
            connection_id=direct, since=since, until=until, limit=query_limit
        )
        scoped_timeline = [e for e in timeline_sample if in_scope(e.connection_id)]
        timeline = scoped_timeline[:METRIC_SAMPLE_LIMIT]

        alert_sample = await self.alerts.list(unread_only=False, limit=query_limit)
        scoped_logs = [
            a for a in alert_sample
            if since <= ensure_utc(a.created_at) <= until and in_scope(a.connection_id)
        ]
        logs = scoped_logs[:METRIC_SAMPLE_LIMIT]

        snapshot_sample = await self.observability.query(
            connection_id=direct, since=since, until=until, limit=query_limit
        )
        scoped_snapshots = [s for s in snapshot_sample if in_scope(s.connection_id)]
        snapshots = scoped_snapshots[:METRIC_SAMPLE_LIMIT]

        diagnostics = []
        for event in timeline:
            if event.status != OperationStatus.ERROR:
                continue
            latest = next(
                (
                    s for s in snapshots
                    if s.connection_id == event.connection_id
                    and ensure_utc(s.timestamp) <= ensure_utc(event.timestamp)
                ),
                None,
            )
            diagnostics.append(
                FailedOperationDiagnostic(
                    event=event,
                    retry_attempts=retry_attempts_of(event),
                    related_events=related_events_of(event, timeline),
                    latest_snapshot=latest,
                )
            )

        if wanted:
            connection_ids = list(request.connection_ids)
        else:
            seen = [e.connection_id for e in timeline]
            seen += [a.connection_id for a in logs if a.connection_id]
            seen += [s.connection_id for s in snapshots]
            connection_ids = list(dict.fromkeys(seen))

        truncated = any(
            len(sample) > METRIC_SAMPLE_LIMIT
            for sample in (
                timeline_sample, scoped_timeline, alert_sample,
                scoped_logs, snapshot_sample, scoped_snapshots,
            )
        )
        include = set(request.includes)

        return IncidentCollection(
            connection_ids=connection_ids,
            timeline=timeline if IncidentSection.TIMELINE in include else [],
            logs=logs if IncidentSection.LOGS in include else [],
            diagnostics=diagnostics if IncidentSection.DIAGNOSTICS in include else [],
            metrics=snapshots if IncidentSection.METRICS in include else [],
            truncated=truncated,
        )

    def build_preview(
        self, request: IncidentBundleRequest, data: IncidentCollection
    ) -> IncidentBundlePreview:
        manifest = IncidentManifest(
            timeline_event_ids=[e.id for e in data.timeline],
            log_alert_ids=[a.id for a in data.logs],
            diagnostic_event_ids=[d.event.id for d in data.diagnostics],
            metric_snapshot_ids=[s.id for s in data.metrics],
        )
        counts = {
            IncidentSection.TIMELINE: len(data.timeline),
            IncidentSection.LOGS: len(data.logs),
            IncidentSection.DIAGNOSTICS: len(data.diagnostics),
            IncidentSection.METRICS: len(data.metrics),
        }

        fingerprint = {
            "since": ensure_utc(request.since).isoformat(),
            "until": ensure_utc(request.until).isoformat(),
            "connection_ids": data.connection_ids,
            "includes": [s.value for s in request.includes],
            "redaction_profile": request.redaction_profile.value,
            "counts": {section.value: count for section, count in counts.items()},
            "truncated": data.truncated,
            "manifest": manifest.model_dump(mode="json"),
        }
        checksum_preview = hashlib.sha256(
            json.dumps(fingerprint, sort_keys=True).encode("utf-8")
        ).hexdigest()

        return IncidentBundlePreview(
            since=request.since,
            until=request.until,
            connection_ids=data.connection_ids,
            includes=request.includes,
            redaction_profile=request.redaction_profile,
            timeline_count=counts[IncidentSection.TIMELINE],
            log_count=counts[IncidentSection.LOGS],
            diagnostic_count=counts[IncidentSection.DIAGNOSTICS],
            metric_count=counts[IncidentSection.METRICS],
            estimated_size_bytes=sum(
                ESTIMATED_BYTES[section] * count for section, count in counts.items()
            ),
            truncated=data.truncated,
            manifest=manifest,
            checksum_preview=checksum_preview,
        )

    async def preview(self, request: IncidentBundleRequest) -> IncidentBundlePreview:
        return self.build_preview(request, await self.collect(request))

    async def list_bundles(self, limit: int = 50) -> list[IncidentBundle]:
        return await self.bundles.list(limit=limit)

    # ==========================================================================
    # Export
    # ==========================================================================

    async def export(self, request: IncidentBundleRequest) -> IncidentBundle:
        """Run a full export inline and return the persisted bundle."""
        _, bundle = await self._run_export(request)
        return bundle

    async def _run_export(
        self,
        request: IncidentBundleRequest,
        on_stage: Optional[StageCallback] = None,
        cancel_requested: Optional[asyncio.Event] = None,
    ) -> tuple[IncidentBundlePreview, IncidentBundle]:
        def advance(stage: IncidentExportStage) -> None:
            if on_stage:
                on_stage(stage)
            if cancel_requested is not None and cancel_requested.is_set():
                raise ExportCancelled()

        advance(IncidentExportStage.COLLECTING)
        data = await self.collect(request)
        preview = self.build_preview(request, data)

        advance(IncidentExportStage.SERIALIZING)
        bundle_id = new_id()
        created_at = self._clock()
        artifact_path = (request.destination_path or "").strip() or self.default_destination(
            bundle_id
        )
        payload = self.build_artifact(request, bundle_id, created_at, preview, data)
        payload["metadata"]["checksum"] = compute_checksum(payload)
        text = json.dumps(payload, indent=2, default=str)

        advance(IncidentExportStage.WRITING)
        try:
            path = Path(artifact_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            logger.error("incident_artifact_write_failed", artifact_path=artifact_path, error=str(e))
            raise OperationFailure(
                ErrorCode.INTERNAL_ERROR,
                "Incident bundle could not be written to disk.",
                False,
                {"artifactPath": artifact_path, "cause": str(e)},
            ) from e

        bundle = IncidentBundle(
            id=bundle_id,
            created_at=created_at,
            since=request.since,
            until=request.until,
            connection_ids=data.connection_ids,
            includes=request.includes,
            redaction_profile=request.redaction_profile,
            destination_path=artifact_path,
            artifact_path=artifact_path,
            checksum=payload["metadata"]["checksum"],
            checksum_preview=preview.checksum_preview,
            truncated=preview.truncated,
            manifest=preview.manifest,
            timeline_count=preview.timeline_count,
            log_count=preview.log_count,
            diagnostic_count=preview.diagnostic_count,
            metric_count=preview.metric_count,
            size_bytes=len(text.encode("utf-8")),
        )

        advance(IncidentExportStage.PERSISTING)
        await self.bundles.save(bundle)
        await self.retention.enforce([RetentionDataset.INCIDENT_ARTIFACTS])

        if on_stage:
            on_stage(IncidentExportStage.COMPLETED)
        logger.info(
            "incident_bundle_exported",
            bundle_id=bundle.id,
            artifact_path=artifact_path,
            size_bytes=bundle.size_bytes,
            truncated=bundle.truncated,
        )
        return preview, bundle

    @staticmethod
    def build_artifact(
        request: IncidentBundleRequest,
        bundle_id: str,
        created_at: Any,
        preview: IncidentBundlePreview,
        data: IncidentCollection,
    ) -> dict[str, Any]:
        strict = request.redaction_profile == RedactionProfile.STRICT
        scrub = {"details": None, "redacted_diff": None}

        timeline = [
            (e.model_copy(update=scrub) if strict else e).model_dump(mode="json")
            for e in data.timeline
        ]
        logs = [
            (
                a.model_copy(update={"message": redact_message(a.message)}) if strict else a
            ).model_dump(mode="json")
            for a in data.logs
        ]
        diagnostics = []
        for entry in data.diagnostics:
            if strict:
                entry = entry.model_copy(
                    update={
                        "event": entry.event.model_copy(update=scrub),
                        "related_events": [r.model_copy(update=scrub) for r in entry.related_events],
                    }
                )
            diagnostics.append(entry.model_dump(mode="json"))

        return {
            "metadata": {
                "id": bundle_id,
                "created_at": created_at.isoformat(),
                "since": ensure_utc(request.since).isoformat(),
                "until": ensure_utc(request.until).isoformat(),
                "connection_ids": data.connection_ids,
                "includes": [s.value for s in request.includes],
                "redaction_profile": request.redaction_profile.value,
                "checksum": "",
                "checksum_preview": preview.checksum_preview,
                "truncated": preview.truncated,
                "manifest": preview.manifest.model_dump(mode="json"),
            },
            "timeline": timeline,
            "logs": logs,
            "diagnostics": diagnostics,
            "metrics": [s.model_dump(mode="json") for s in data.metrics],
        }

    # ==========================================================================
    # Background jobs
    # ==========================================================================

    async def start(self, request: IncidentBundleRequest) -> IncidentExportJob:
        """Queue a background export and return its pending job."""
        job_id = new_id()
        now = self._clock()
        destination = (request.destination_path or "").strip() or self.default_destination(job_id)

        state = _JobState(
            job=IncidentExportJob(
                id=job_id,
                status=IncidentExportStatus.PENDING,
                stage=IncidentExportStage.QUEUED,
                progress_percent=0,
                created_at=now,
                updated_at=now,
                request=request.model_copy(update={"destination_path": destination}),
                destination_path=destination,
            )
        )
        self._jobs[job_id] = state
        self._schedule(state)
        logger.info("incident_export_queued", job_id=job_id, destination=destination)
        return self._snapshot(state)

    async def cancel(self, job_id: str) -> IncidentExportJob:
        """
        Request cancellation.

        Finished jobs are returned unchanged; a pending job is cancelled
        at once; a running job moves to cancelling until its next stage.
        """
        state = self._require(job_id)
        status = state.job.status
        if status in (IncidentExportStatus.SUCCESS, IncidentExportStatus.FAILED):
            return self._snapshot(state)

        state.cancel_requested.set()
        if status == IncidentExportStatus.PENDING:
            self._update(
                state,
                status=IncidentExportStatus.CANCELLED,
                stage=IncidentExportStage.CANCELLED,
            )
        elif status != IncidentExportStatus.CANCELLED:
            self._update(state, status=IncidentExportStatus.CANCELLING)

        logger.info("incident_export_cancel_requested", job_id=job_id, status=state.job.status.value)
        return self._snapshot(state)

    async def resume(self, job_id: str) -> IncidentExportJob:
        """Restart a cancelled or failed job from the beginning."""
        state = self._require(job_id)
        if state.job.status not in (IncidentExportStatus.CANCELLED, IncidentExportStatus.FAILED):
            return self._snapshot(state)

        state.cancel_requested.clear()
        self._update(
            state,
            status=IncidentExportStatus.PENDING,
            stage=IncidentExportStage.QUEUED,
            progress_percent=0,
            error_message=None,
            bundle=None,
            checksum_preview=None,
            truncated=None,
            manifest=None,
        )
        self._schedule(state)
        return self._snapshot(state)

    def get(self, job_id: str) -> IncidentExportJob:
        return self._snapshot(self._require(job_id))

    async def join(self, job_id: str) -> IncidentExportJob:
        """Wait for the job's current run to finish."""
        state = self._require(job_id)
        if state.task is not None:
            await asyncio.shield(state.task)
        return self._snapshot(state)

    async def shutdown(self) -> None:
        tasks = [s.task for s in self._jobs.values() if s.task is not None and not s.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _schedule(self, state: _JobState) -> None:
        if state.task is not None and not state.task.done():
            return
        state.task = asyncio.create_task(self._execute(state))

    async def _execute(self, state: _JobState) -> None:
        if state.cancel_requested.is_set() or state.job.status == IncidentExportStatus.CANCELLED:
            self._update(
                state,
                status=IncidentExportStatus.CANCELLED,
                stage=IncidentExportStage.CANCELLED,
            )
            state.cancel_requested.clear()
            return

        self._update(
            state,
            status=IncidentExportStatus.RUNNING,
            stage=IncidentExportStage.COLLECTING,
            progress_percent=5,
            error_message=None,
        )

        def on_stage(stage: IncidentExportStage) -> None:
            cancelling = state.job.status == IncidentExportStatus.CANCELLING
            self._update(
                state,
                status=IncidentExportStatus.CANCELLING if cancelling else IncidentExportStatus.RUNNING,
                stage=stage,
                progress_percent=STAGE_PROGRESS[stage],
            )

        try:
            preview, bundle = await self._run_export(
                state.job.request, on_stage=on_stage, cancel_requested=state.cancel_requested
            )
            self._update(
                state,
                status=IncidentExportStatus.SUCCESS,
                stage=IncidentExportStage.COMPLETED,
                progress_percent=100,
                checksum_preview=preview.checksum_preview,
                manifest=preview.manifest,
                truncated=preview.truncated,
                bundle=bundle,
            )
        except ExportCancelled:
            self._update(
                state,
                status=IncidentExportStatus.CANCELLED,
                stage=IncidentExportStage.CANCELLED,
            )
            logger.info("incident_export_cancelled", job_id=state.job.id)
        except Exception as e:
            message = e.message if isinstance(e, OperationFailure) else str(e) or "Unknown error."
            self._update(
                state,
                status=IncidentExportStatus.FAILED,
                stage=IncidentExportStage.FAILED,
                error_message=message,
            )
            logger.error("incident_export_failed", job_id=state.job.id, error=message)
        finally:
            state.cancel_requested.clear()

    def _require(self, job_id: str) -> _JobState:
        state = self._jobs.get(job_id)
        if state is None:
            raise not_found("Incident export job", jobId=job_id)
        return state

    def _update(self, state: _JobState, **changes: Any) -> None:
        state.job = state.job.model_copy(update={**changes, "updated_at": self._clock()})

    @staticmethod
    def _snapshot(state: _JobState) -> IncidentExportJob:
        return state.job.model_copy(deep=True)

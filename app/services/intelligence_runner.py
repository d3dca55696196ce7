"""Intelligence job orchestrator.

Owns the lifecycle of analysis jobs: creates the record with its lineage
(version, previous job, bounded history), runs the entity agent as a
background task, retries rate-limited runs with exponential backoff, honors
cooperative cancellation and writes the final state with change detection.

Every write after launch is conditional on the job still being active, so a
cancelled job is never resurrected by a late result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import lru_cache
from types import ModuleType
from typing import Any

from pydantic import ValidationError

from app.agents.intelligence.types import AgentProgress, AgentResult, ProgressType
from app.core.change_detection import create_history_snapshot, detect_changes, extract_list, extract_score
from app.core.config import get_settings
from app.core.intelligence_errors import (
    JobCancelledError,
    JobNotFoundError,
    JobValidationError,
    is_rate_limit_error,
)
from app.core.logging import get_logger, log_with_context
from app.core.schemas_intelligence_jobs import (
    ACTIVE_STATUSES,
    AgentStats,
    AnalysisJob,
    AnalysisRequest,
    CancelResult,
    EntityTimeline,
    EntityType,
    JobLogEntry,
    JobStatus,
    LogStatus,
    RetryConfig,
    ScoreTrendPoint,
    TimelineEntry,
    TimelineStats,
    utc_now,
)

logger = get_logger(__name__)

AnalyzeFn = Callable[..., Awaitable[AgentResult]]
SleepFn = Callable[[float], Awaitable[Any]]

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_REQUIRED_FIELDS = ("entity_type", "entity_id", "entity_name")


def _default_analyze() -> AnalyzeFn:
    from app.agents.intelligence.entity_agents import run_entity_analysis

    return run_entity_analysis


def _default_store() -> ModuleType:
    from app.db import intelligence_jobs

    return intelligence_jobs


class _JobRun:
    """Mutable per-execution state: the job's log and its store writes."""

    def __init__(self, store: Any, job: AnalysisJob):
        self.store = store
        self.job = job
        self.logs: list[JobLogEntry] = list(job.logs)

    @property
    def job_id(self) -> str:
        return self.job.id

    def add_log(
        self,
        step: str,
        message: str,
        status: LogStatus = LogStatus.info,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.logs.append(JobLogEntry(step=step, message=message, status=status, data=data))

    def serialized_logs(self) -> list[dict[str, Any]]:
        return [entry.model_dump(mode="json") for entry in self.logs]

    def write(self, fields: dict[str, Any], only_if: list[str] | None = None) -> dict[str, Any] | None:
        """Guarded write. Returns None when the job left the guard statuses."""
        return self.store.update_job(self.job_id, fields, only_if_status=only_if or _ACTIVE)

    def flush_logs(self) -> bool:
        return self.write({"logs": self.serialized_logs()}) is not None

    async def on_progress(self, event: AgentProgress) -> None:
        step, message, status = _describe_progress(event)
        data = {k: v for k, v in event.data.items() if k not in ("message", "input")} or None
        self.add_log(step, message, status, data)
        self.flush_logs()

    async def should_cancel(self) -> bool:
        row = self.store.get_job(self.job_id)
        return row is None or row.get("status") == JobStatus.cancelled.value


def _describe_progress(event: AgentProgress) -> tuple[str, str, LogStatus]:
    """Map an engine progress event to (step, message, status) for the job log."""
    data = event.data
    tool = data.get("tool")

    if event.type == ProgressType.started:
        return "agent-start", data.get("message") or "Agent started", LogStatus.loading
    if event.type == ProgressType.thinking:
        return "agent-thinking", data.get("message") or "Analyzing", LogStatus.loading
    if event.type == ProgressType.tool_call:
        return f"tool-{tool}", f"Calling {tool}", LogStatus.loading
    if event.type == ProgressType.tool_result:
        if data.get("success"):
            return f"tool-{tool}", f"{tool} returned", LogStatus.complete
        return f"tool-{tool}", f"{tool} failed: {data.get('error')}", LogStatus.error
    if event.type == ProgressType.complete:
        return "agent-complete", "Analysis complete", LogStatus.complete
    return "agent-error", data.get("error") or "Agent error", LogStatus.error


class IntelligenceRunner:
    """Submits, runs, retries and cancels intelligence analysis jobs."""

    def __init__(
        self,
        store: Any | None = None,
        analyze: AnalyzeFn | None = None,
        sleep: SleepFn = asyncio.sleep,
        batch_max_size: int | None = None,
        history_limit: int | None = None,
        default_max_retries: int | None = None,
        default_initial_delay_ms: int | None = None,
    ):
        if None in (batch_max_size, history_limit, default_max_retries, default_initial_delay_ms):
            settings = get_settings()
            batch_max_size = batch_max_size or settings.INTEL_BATCH_MAX_SIZE
            history_limit = history_limit or settings.INTEL_HISTORY_LIMIT
            if default_max_retries is None:
                default_max_retries = settings.INTEL_RETRY_MAX_RETRIES
            if default_initial_delay_ms is None:
                default_initial_delay_ms = settings.INTEL_RETRY_INITIAL_DELAY_MS

        self.store = store or _default_store()
        self.analyze = analyze or _default_analyze()
        self.sleep = sleep
        self.batch_max_size = batch_max_size
        self.history_limit = history_limit
        self.default_max_retries = default_max_retries
        self.default_initial_delay_ms = default_initial_delay_ms

        # Strong references keep background runs alive until they finish
        self._tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        entity_name: str,
        user_id: str | None = None,
    ) -> AnalysisJob:
        """Create a job for one entity and start it in the background."""
        jobs = await self._submit(
            [{"entity_type": entity_type, "entity_id": entity_id, "entity_name": entity_name}],
            user_id=user_id,
            retry_config=None,
        )
        return jobs[0]

    async def submit_batch(
        self,
        items: list[dict[str, Any] | AnalysisRequest],
        user_id: str | None = None,
    ) -> list[AnalysisJob]:
        """
        Create and start one job per item.

        Raises:
            JobValidationError: If the batch is empty, too large or has an invalid
                entry. Nothing is created in that case.
        """
        return await self._submit(items, user_id=user_id, retry_config=None)

    async def submit_with_retry(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        entity_name: str,
        max_retries: int | None = None,
        initial_delay_ms: int | None = None,
        user_id: str | None = None,
    ) -> AnalysisJob:
        """Like submit, but rate-limited runs are retried with exponential backoff."""
        jobs = await self._submit(
            [{"entity_type": entity_type, "entity_id": entity_id, "entity_name": entity_name}],
            user_id=user_id,
            retry_config=self._retry_config(max_retries, initial_delay_ms),
        )
        return jobs[0]

    async def submit_batch_with_retry(
        self,
        items: list[dict[str, Any] | AnalysisRequest],
        max_retries: int | None = None,
        initial_delay_ms: int | None = None,
        user_id: str | None = None,
    ) -> list[AnalysisJob]:
        """Batch re-run: submit_batch semantics with whole-run retry per job."""
        return await self._submit(
            items,
            user_id=user_id,
            retry_config=self._retry_config(max_retries, initial_delay_ms),
        )

    def _retry_config(self, max_retries: int | None, initial_delay_ms: int | None) -> RetryConfig:
        max_retries = self.default_max_retries if max_retries is None else max_retries
        initial_delay_ms = self.default_initial_delay_ms if initial_delay_ms is None else initial_delay_ms
        if max_retries < 1:
            raise JobValidationError("max_retries must be at least 1")
        if initial_delay_ms < 0:
            raise JobValidationError("initial_delay_ms must not be negative")
        return RetryConfig(max_retries=max_retries, initial_delay_ms=initial_delay_ms)

    def _validate_items(self, items: Any) -> list[AnalysisRequest]:
        if not isinstance(items, list) or not items:
            raise JobValidationError("jobs must be a non-empty list")
        if len(items) > self.batch_max_size:
            raise JobValidationError(f"Maximum batch size is {self.batch_max_size} jobs")

        requests: list[AnalysisRequest] = []
        for index, item in enumerate(items):
            if isinstance(item, AnalysisRequest):
                requests.append(item)
                continue
            if not isinstance(item, dict):
                raise JobValidationError(f"Job at index {index} must be an object")

            missing = [f for f in _REQUIRED_FIELDS if not item.get(f)]
            if missing:
                raise JobValidationError(f"Job at index {index} is missing {', '.join(missing)}")

            try:
                requests.append(
                    AnalysisRequest(
                        entity_type=item["entity_type"],
                        entity_id=str(item["entity_id"]),
                        entity_name=str(item["entity_name"]),
                    )
                )
            except ValidationError as e:
                raise JobValidationError(
                    f"Job at index {index} has invalid entity_type: {item['entity_type']}"
                ) from e
        return requests

    def _lineage(self, previous_row: dict[str, Any] | None) -> dict[str, Any]:
        if not previous_row:
            return {"version": 1, "previous_job_id": None, "history": []}

        previous = AnalysisJob.model_validate(previous_row)
        history = [*previous.history, create_history_snapshot(previous)]
        return {
            "version": previous.version + 1,
            "previous_job_id": previous.id,
            "history": history[-self.history_limit :],
        }

    async def _submit(
        self,
        items: Any,
        user_id: str | None,
        retry_config: RetryConfig | None,
    ) -> list[AnalysisJob]:
        requests = self._validate_items(items)

        if len(requests) == 1:
            request = requests[0]
            row = self.store.get_latest_completed_job(request.entity_type.value, request.entity_id)
            previous_rows = {(request.entity_type.value, request.entity_id): row} if row else {}
        else:
            previous_rows = self.store.get_latest_completed_jobs(
                [(r.entity_type.value, r.entity_id) for r in requests]
            )

        jobs = [
            AnalysisJob(
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                entity_name=request.entity_name,
                user_id=user_id,
                retry_config=retry_config.model_copy() if retry_config else None,
                **self._lineage(previous_rows.get((request.entity_type.value, request.entity_id))),
            )
            for request in requests
        ]

        # Records exist before any background work starts
        if len(jobs) == 1:
            self.store.create_job(jobs[0].to_record())
        else:
            self.store.create_jobs([job.to_record() for job in jobs])

        for job in jobs:
            self._launch(job)

        logger.info(
            f"Submitted {len(jobs)} intelligence job(s), "
            f"{sum(1 for j in jobs if j.is_rerun)} re-run(s), retry={retry_config is not None}"
        )
        return jobs

    def _launch(self, job: AnalysisJob) -> None:
        task = asyncio.create_task(self._execute(job), name=f"intelligence-job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    async def wait_for_all(self) -> None:
        """Wait until every background run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, job: AnalysisJob) -> None:
        run = _JobRun(self.store, job)
        ctx = {"job_id": job.id, "entity_type": job.entity_type.value, "entity_id": job.entity_id}

        try:
            run.add_log(
                "job-start",
                f"Starting {job.entity_type.value} analysis for {job.entity_name}",
                LogStatus.loading,
                {"version": job.version},
            )
            started = run.write(
                {
                    "status": JobStatus.running.value,
                    "started_at": utc_now().isoformat(),
                    "logs": run.serialized_logs(),
                },
                only_if=[JobStatus.pending.value],
            )
            if started is None:
                logger.info("Job cancelled before start", extra=ctx)
                return

            if job.retry_config:
                outcome = await self._run_with_retry(run, job.retry_config)
            else:
                outcome = await self._attempt(run)

            if outcome.cancelled:
                raise JobCancelledError(f"Job {job.id} cancelled while running")

            if outcome.success:
                self._complete(run, outcome)
            else:
                self._fail(run, outcome.error or "Agent failed to complete analysis", outcome.stats)

        except JobCancelledError as e:
            logger.info(f"{e}; result discarded", extra=ctx)
        except Exception as e:
            logger.exception(f"Intelligence job crashed: {e}", extra=ctx)
            try:
                self._fail(run, str(e), None)
            except Exception:
                logger.exception("Could not record job failure", extra=ctx)

    async def _attempt(self, run: _JobRun) -> AgentResult:
        """One engine run. Exceptions before or around the run become failed results."""
        job = run.job
        try:
            return await self.analyze(
                job.entity_type,
                job.entity_id,
                job.entity_name,
                on_progress=run.on_progress,
                should_cancel=run.should_cancel,
            )
        except Exception as e:
            rate_limited = is_rate_limit_error(e)
            logger.warning(
                f"Analysis attempt failed (rate_limited={rate_limited}): {e}",
                extra={"job_id": job.id},
            )
            return AgentResult(success=False, error=str(e), rate_limited=rate_limited)

    async def _run_with_retry(self, run: _JobRun, retry: RetryConfig) -> AgentResult:
        """
        Run up to `retry.max_retries` attempts in total.

        After failed attempt n the wait is initial_delay_ms * 2^(n-1). Only
        rate-limit class failures are retried.

        Raises:
            JobCancelledError: If the job was cancelled during a backoff wait
        """
        outcome = AgentResult(success=False)

        for attempt in range(1, retry.max_retries + 1):
            outcome = await self._attempt(run)
            if outcome.success or outcome.cancelled or not outcome.rate_limited:
                return outcome
            if attempt == retry.max_retries:
                break

            delay_ms = retry.initial_delay_ms * 2 ** (attempt - 1)
            retry.current_retry = attempt
            run.add_log(
                "rate-limit-wait",
                f"Rate limited. Waiting {delay_ms / 1000:g}s before retry "
                f"{attempt}/{retry.max_retries - 1}",
                LogStatus.warning,
                {"delay_ms": delay_ms, "attempt": attempt, "error": outcome.error},
            )
            log_with_context(
                logger,
                logging.INFO,
                "Rate limited; backing off",
                job_id=run.job_id,
                attempt=attempt,
                delay_ms=delay_ms,
            )
            if run.write({"retry_config": retry.model_dump(), "logs": run.serialized_logs()}) is None:
                raise JobCancelledError(f"Job {run.job_id} cancelled during backoff")

            await self.sleep(delay_ms / 1000)

            if await run.should_cancel():
                raise JobCancelledError(f"Job {run.job_id} cancelled during backoff")
            run.add_log(
                "retry-attempt",
                f"Retry attempt {attempt + 1} of {retry.max_retries}",
                LogStatus.loading,
                {"attempt": attempt + 1},
            )
            run.flush_logs()

        run.add_log(
            "retry-exhausted",
            f"Failed after {retry.max_retries} attempts",
            LogStatus.error,
            {"attempts": retry.max_retries},
        )
        return outcome.model_copy(
            update={"error": f"Rate limit error after {retry.max_retries} attempts: {outcome.error}"}
        )

    def _complete(self, run: _JobRun, outcome: AgentResult) -> None:
        job = run.job
        previous_result = None
        if job.previous_job_id:
            previous = self.store.get_job(job.previous_job_id)
            previous_result = previous.get("result") if previous else None

        changes = detect_changes(outcome.output, previous_result)
        run.add_log("job-complete", changes.summary, LogStatus.complete)

        written = run.write(
            {
                "status": JobStatus.complete.value,
                "result": outcome.output,
                "stats": outcome.stats.model_dump(),
                "completed_at": utc_now().isoformat(),
                "change_detection": changes.model_dump(),
                "logs": run.serialized_logs(),
            },
            only_if=[JobStatus.running.value],
        )
        if written is None:
            logger.info("Job no longer running; result discarded", extra={"job_id": job.id})
            return
        logger.info(
            f"Job complete: {changes.summary}",
            extra={"job_id": job.id, "entity_type": job.entity_type.value, "entity_id": job.entity_id},
        )

    def _fail(self, run: _JobRun, error: str, stats: AgentStats | None) -> None:
        run.add_log("job-error", error, LogStatus.error)
        fields: dict[str, Any] = {
            "status": JobStatus.error.value,
            "error": error,
            "completed_at": utc_now().isoformat(),
            "logs": run.serialized_logs(),
        }
        if stats is not None:
            fields["stats"] = stats.model_dump()

        if run.write(fields) is not None:
            logger.warning(f"Job failed: {error}", extra={"job_id": run.job_id})

    # =========================================================================
    # Queries and cancellation
    # =========================================================================

    def get_job(self, job_id: str) -> AnalysisJob:
        """
        Raises:
            JobNotFoundError: If no job has this id
        """
        row = self.store.get_job(job_id)
        if not row:
            raise JobNotFoundError(job_id)
        return AnalysisJob.model_validate(row)

    def get_previous_job(self, job: AnalysisJob) -> AnalysisJob | None:
        if not job.previous_job_id:
            return None
        row = self.store.get_job(job.previous_job_id)
        return AnalysisJob.model_validate(row) if row else None

    def list_jobs(
        self,
        entity_type: EntityType | str | None = None,
        status: JobStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AnalysisJob]:
        rows = self.store.list_jobs(
            entity_type=EntityType(entity_type).value if entity_type else None,
            status=JobStatus(status).value if status else None,
            limit=limit,
            offset=offset,
        )
        return [AnalysisJob.model_validate(row) for row in rows]

    def cancel(self, job_id: str) -> CancelResult:
        """
        Cancel a pending or running job. Terminal jobs are left untouched.

        Raises:
            JobNotFoundError: If no job has this id
        """
        job = self.get_job(job_id)
        if job.is_terminal:
            return CancelResult(job=job, cancelled=False, reason=f"Job already {job.status.value}")

        row = self.store.update_job(
            job_id,
            {"status": JobStatus.cancelled.value, "completed_at": utc_now().isoformat()},
            only_if_status=_ACTIVE,
        )
        if row is None:
            # Finished between the read and the write
            job = self.get_job(job_id)
            return CancelResult(job=job, cancelled=False, reason=f"Job already {job.status.value}")

        logger.info("Job cancelled", extra={"job_id": job_id})
        return CancelResult(job=AnalysisJob.model_validate(row), cancelled=True)

    def get_entity_timeline(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        limit: int = 50,
    ) -> EntityTimeline:
        """Finished analyses for one entity, most recent first, with stats and score trend."""
        try:
            entity_type = EntityType(entity_type)
        except ValueError as e:
            raise JobValidationError(f"Invalid entity type: {entity_type}") from e

        rows = self.store.list_entity_jobs(
            entity_type.value,
            entity_id,
            statuses=[JobStatus.complete.value, JobStatus.error.value],
            limit=limit,
        )
        jobs = [AnalysisJob.model_validate(row) for row in rows]

        timeline = [
            TimelineEntry(
                id=job.id,
                analysis_id=job.analysis_id,
                version=job.version,
                status=job.status,
                started_at=job.started_at,
                completed_at=job.completed_at,
                duration_ms=job.stats.duration_ms if job.stats else None,
                tool_calls=job.stats.tool_calls if job.stats else None,
                iterations=job.stats.iterations if job.stats else None,
                user_id=job.user_id,
                error=job.error,
                score=extract_score(job.result),
                insights_count=len(extract_list(job.result, "insights")),
                risks_count=len(extract_list(job.result, "riskFactors")),
                opportunities_count=len(extract_list(job.result, "opportunitySignals")),
                actions_count=len(extract_list(job.result, "recommendedActions")),
                result=job.result,
                change_detection=job.change_detection,
                previous_job_id=job.previous_job_id,
            )
            for job in jobs
        ]

        completed = [job for job in jobs if job.status == JobStatus.complete]
        durations = [
            job.stats.duration_ms for job in completed if job.stats and job.stats.duration_ms
        ]
        stats = TimelineStats(
            total_analyses=len(jobs),
            completed_analyses=len(completed),
            errored_analyses=len(jobs) - len(completed),
            first_analysis=jobs[-1].completed_at if jobs else None,
            latest_analysis=jobs[0].completed_at if jobs else None,
            average_duration_ms=round(sum(durations) / len(durations)) if durations else None,
        )

        score_trend = []
        for job in reversed(completed):
            score = extract_score(job.result)
            if score is not None:
                score_trend.append(ScoreTrendPoint(date=job.completed_at, score=score, version=job.version))

        return EntityTimeline(
            entity_type=entity_type,
            entity_id=entity_id,
            timeline=timeline,
            stats=stats,
            score_trend=score_trend,
            has_history=bool(jobs),
        )


@lru_cache
def get_intelligence_runner() -> IntelligenceRunner:
    """Process-wide runner used by the API."""
    return IntelligenceRunner()

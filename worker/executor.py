"""
잡 실행기 모듈

한 잡의 시도(Execution) 루프를 끝까지 실행합니다.
재시도는 재귀 호출이 아닌 while 루프로 처리하므로 시도 횟수가 무제한이어도
스택 깊이는 일정합니다.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from common.clock import after, utcnow
from common.logging import job_log_context
from database.base import Store
from database.exception import RecordNotFoundError
from worker.base import BaseJob, JobDefinition, get_job_definition
from worker.exception import JobNotFoundError
from worker.handler import (
    Discard,
    HandlerRegistry,
    Rescue,
    Retry,
    format_error,
    handler_key,
)
from worker.model.job import ErrorEvent, Execution, ExecutionStatus, Job, JobState
from worker.reporter import ErrorReporter, get_error_reporter

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """execute() 한 번의 실행 상태"""
    job: Job
    instance: BaseJob | None
    definition: JobDefinition | None
    lookup_error: JobNotFoundError | None
    inline: bool
    should_stop: Callable[[], bool] | None
    last_finished_at: datetime | None = None

    @property
    def registry(self) -> HandlerRegistry:
        if self.definition is None:
            return HandlerRegistry(self.job.job_name)
        return self.definition.handlers

    @property
    def stopping(self) -> bool:
        return self.should_stop is not None and self.should_stop()


class Executor:
    """잡 실행 엔진 (retry / discard / rescue 상태 머신)"""

    def __init__(self, store: Store, reporter: ErrorReporter | None = None):
        self._store = store
        self._reporter = reporter

    @property
    def reporter(self) -> ErrorReporter:
        return self._reporter or get_error_reporter()

    async def execute(
        self,
        job_id: str,
        *,
        inline: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> Job:
        """
        잡 실행

        호출자는 잡의 advisory lock을 보유하고 있어야 합니다.

        Args:
            job_id: 실행할 잡 ID
            inline: True면 재시도 대기를 현재 태스크에서 sleep으로 처리
            should_stop: Capsule 종료 여부 (시도 사이에 확인)

        Returns:
            Job: 실행 후 잡 상태. 재스케줄된 경우 queued 상태

        Raises:
            StoreError: Store 접근 실패 (잡 로직 에러는 전파하지 않음)
        """
        job = await self._store.get_job(job_id)
        if job is None:
            raise RecordNotFoundError("jobs", job_id)
        if job.is_finished:
            logger.warning(f"Job already finished: id={job.id}, state={job.state.value}")
            return job

        run = self._prepare(job, inline, should_stop)
        if job.executions_count > 0:
            executions = await self._store.get_executions(job.id)
            if executions:
                run.last_finished_at = executions[-1].finished_at

        with job_log_context(job_id=job.id, job_name=job.job_name):
            return await self._run_attempts(run)

    async def _run_attempts(self, run: _Run) -> Job:
        """시도 루프 (재시도는 반복으로 처리)"""
        while True:
            run.job, execution = await self._store.create_execution(
                run.job.id, not_before=run.last_finished_at
            )
            logger.info(
                f"Starting job execution: id={run.job.id}, job_name={run.job.job_name}, "
                f"attempt={execution.sequence}"
            )

            with job_log_context(attempt=execution.sequence):
                try:
                    await self._perform(run, execution)
                except Exception as error:
                    retry_wait = await self._handle_error(run, execution, error)
                else:
                    await self._finish(
                        run,
                        execution,
                        status=ExecutionStatus.SUCCEEDED,
                        error=None,
                        error_event=None,
                        state=JobState.SUCCEEDED,
                    )
                    logger.info(f"Job execution succeeded: id={run.job.id}, attempt={execution.sequence}")
                    return run.job

            if retry_wait is None:
                return run.job

            if run.inline:
                if retry_wait > 0:
                    await asyncio.sleep(retry_wait)
                continue

            if retry_wait > 0 or run.stopping:
                run.job = await self._store.update_job(
                    run.job.id,
                    state=JobState.QUEUED,
                    scheduled_at=utcnow() + timedelta(seconds=retry_wait),
                )
                logger.info(
                    f"Job rescheduled: id={run.job.id}, "
                    f"scheduled_at={run.job.scheduled_at.isoformat()}"
                )
                return run.job

    def _prepare(self, job: Job, inline: bool, should_stop: Callable[[], bool] | None) -> _Run:
        """잡 타입 조회. 미등록 타입은 첫 시도의 에러로 기록됨"""
        try:
            definition = get_job_definition(job.job_name)
        except JobNotFoundError as e:
            logger.error(f"Job type not registered: {job.job_name}")
            return _Run(job, None, None, e, inline, should_stop)

        instance = definition.job_class(job.id, job.params)
        return _Run(job, instance, definition, None, inline, should_stop)

    async def _perform(self, run: _Run, execution: Execution) -> None:
        if run.lookup_error is not None:
            raise run.lookup_error

        run.instance.executions = execution.sequence
        timeout = run.definition.timeout_seconds
        if timeout:
            await asyncio.wait_for(run.instance.perform(run.job.params), timeout=timeout)
        else:
            await run.instance.perform(run.job.params)

    async def _handle_error(self, run: _Run, execution: Execution, error: Exception) -> float | None:
        """
        에러 분류 및 기록

        Returns:
            재시도 대기 시간(초). None이면 잡이 종료됨
        """
        handler = run.registry.resolve(error)

        if isinstance(handler, Discard):
            logger.info(f"Job discarded: id={run.job.id}, error={format_error(error)}")
            await self._finish_with_error(run, execution, error, ErrorEvent.DISCARDED, JobState.DISCARDED)
            return None

        if isinstance(handler, Retry):
            key = handler_key(handler.kind)
            consumed = run.job.exception_executions.get(key, 0) + 1
            counters = {**run.job.exception_executions, key: consumed}

            if consumed < handler.attempts:
                try:
                    wait = handler.wait_seconds(consumed)
                except Exception as wait_error:
                    logger.error(
                        f"Retry wait failed: id={run.job.id}, error={format_error(wait_error)}"
                    )
                    await self._finish_with_error(
                        run, execution, wait_error, ErrorEvent.UNHANDLED, JobState.ERRORED,
                        exception_executions=counters,
                    )
                    self.reporter.report(wait_error)
                    return None
                logger.warning(
                    f"Retrying job: id={run.job.id}, attempt={execution.sequence}, "
                    f"retry={consumed}/{handler.attempts}, wait={wait}s, error={format_error(error)}"
                )
                await self._finish_with_error(
                    run, execution, error, ErrorEvent.RETRIED, None, exception_executions=counters
                )
                return wait

            logger.error(
                f"Retry stopped: id={run.job.id}, attempts={consumed}, error={format_error(error)}"
            )
            await self._finish_with_error(
                run, execution, error, ErrorEvent.RETRY_STOPPED, JobState.ERRORED,
                exception_executions=counters,
            )
            self.reporter.report(error)
            return None

        if isinstance(handler, Rescue):
            return await self._rescue(run, execution, handler, error)

        logger.error(f"Unhandled job error: id={run.job.id}, error={format_error(error)}")
        await self._finish_with_error(run, execution, error, ErrorEvent.UNHANDLED, JobState.ERRORED)
        self.reporter.report(error)
        return None

    async def _rescue(self, run: _Run, execution: Execution, handler: Rescue, error: Exception) -> float | None:
        try:
            result = handler.continuation(run.instance, error)
            if inspect.isawaitable(result):
                await result
        except Exception as rescue_error:
            logger.error(
                f"Rescue handler raised: id={run.job.id}, error={format_error(rescue_error)}"
            )
            await self._finish_with_error(
                run, execution, rescue_error, ErrorEvent.UNHANDLED, JobState.ERRORED
            )
            self.reporter.report(rescue_error)
            return None

        requested, wait = run.instance._take_retry_request()
        if requested:
            logger.info(f"Rescue requested retry: id={run.job.id}, wait={wait}s")
            await self._finish_with_error(run, execution, error, ErrorEvent.HANDLED, None)
            return wait

        logger.info(f"Job error handled: id={run.job.id}, error={format_error(error)}")
        await self._finish_with_error(run, execution, error, ErrorEvent.HANDLED, JobState.SUCCEEDED)
        return None

    async def _finish_with_error(
        self,
        run: _Run,
        execution: Execution,
        error: BaseException,
        error_event: ErrorEvent,
        state: JobState | None,
        **job_fields,
    ) -> None:
        await self._finish(
            run,
            execution,
            status=ExecutionStatus.DISCARDED,
            error=format_error(error),
            error_event=error_event,
            state=state,
            **job_fields,
        )

    async def _finish(
        self,
        run: _Run,
        execution: Execution,
        *,
        status: ExecutionStatus,
        error: str | None,
        error_event: ErrorEvent | None,
        state: JobState | None,
        **job_fields,
    ) -> None:
        """
        시도 종료 기록

        state가 None이면 잡은 진행 중(재시도 대기)으로 남고,
        종료 상태이면 finished_at이 함께 기록됩니다.
        """
        previous = execution.created_at
        if run.last_finished_at is not None:
            previous = max(previous, run.last_finished_at)
        finished_at = after(previous)
        job_fields.update(error=error, error_event=error_event)
        if state is not None:
            job_fields.update(state=state, finished_at=finished_at)

        run.job = await self._store.finish_execution(
            execution.id,
            status=status,
            error=error,
            error_event=error_event,
            finished_at=finished_at,
            job_fields=job_fields,
        )
        run.last_finished_at = finished_at

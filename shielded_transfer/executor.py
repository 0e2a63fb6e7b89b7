"""
Workflow Stage Executor

Runs named stages strictly in order over a shared context. A stage reports
Success (its output is merged into the context), Failure (run halts) or
Fatal (run halts and is flagged for escalation). The executor never
retries; stages that talk to the network retry transient errors themselves
via retry_transient().
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from loguru import logger

from .errors import ShieldedTransferError, StageCancelled, TransientError
from .models import ErrorKind, RunStatus, StageRecord, StageResult, StageState, WorkflowRun

T = TypeVar('T')


class CancellationToken:
    """External cancellation signal observed by long-running stages"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first

        On cancellation the inner call is cancelled and StageCancelled is
        raised; abandoning any external work is up to the callee.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StageCancelled(self.reason)

        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not work.done():
                work.cancel()

        if work.cancelled() or not work.done():
            raise StageCancelled(self.reason)
        return work.result()


class StageContext:
    """
    Mutable accumulator owned by one workflow run

    Stages read what earlier stages wrote; each Success output is merged in.
    """

    def __init__(self, wallet_id: str, cancellation: Optional[CancellationToken] = None, **values):
        self.wallet_id = wallet_id
        self.cancellation = cancellation or CancellationToken()
        self._values: Dict[str, Any] = dict(values)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def update(self, values: Dict[str, Any]):
        self._values.update(values)

    def snapshot(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        if keys is None:
            return dict(self._values)
        return {k: self._values[k] for k in keys if k in self._values}


class Stage(ABC):
    """One named step of a workflow"""

    name: str = "stage"

    @abstractmethod
    async def execute(self, context: StageContext) -> StageResult:
        ...

    def __repr__(self):
        return f"{type(self).__name__}({self.name})"


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 2.0,
    description: str = "call",
) -> T:
    """
    Retry a network call on TransientError with exponential backoff

    Args:
        call: Zero-argument coroutine factory
        attempts: Total attempts (not retries)
        delay: First backoff delay in seconds, doubled each time
        description: Name used in log lines

    Returns:
        Result of the first successful attempt

    Raises:
        TransientError: when every attempt failed transiently
        Exception: any non-transient error immediately
    """
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except TransientError as e:
            if attempt == attempts:
                logger.warning(f"⚠ {description} failed after {attempts} attempts: {e}")
                raise
            wait = delay * (2 ** (attempt - 1))
            logger.info(f"{description} attempt {attempt}/{attempts} failed ({e}), retrying in {wait:.1f}s")
            await asyncio.sleep(wait)


def classify_exception(error: BaseException) -> StageResult:
    """Map an exception escaping a stage to a StageResult"""
    if isinstance(error, ShieldedTransferError):
        kind = error.kind
        if kind is ErrorKind.FATAL:
            return StageResult.fatal_error(kind, str(error))
        if kind is ErrorKind.TRANSIENT:
            # Retries were the stage's job; reaching here ends the run
            return StageResult.failure(ErrorKind.TRANSIENT, str(error))
        return StageResult.failure(kind, str(error))
    return StageResult.fatal_error(ErrorKind.FATAL, f"{type(error).__name__}: {error}")


async def execute_stage(
    stage: Stage,
    context: StageContext,
    record: StageRecord,
    failure_level: str = "ERROR",
) -> StageResult:
    """
    Run one stage, timing it and filling in its record

    Exceptions raised by the stage are classified, never propagated;
    asyncio.CancelledError is recorded and re-raised.
    """
    record.state = StageState.RUNNING
    logger.info(f"▶ {stage.name}...")
    started = time.monotonic()
    try:
        result = await stage.execute(context)
        if not isinstance(result, StageResult):
            result = StageResult.fatal_error(
                ErrorKind.FATAL, f"{stage.name} returned {type(result).__name__}, not StageResult"
            )
    except asyncio.CancelledError:
        record.duration_seconds = time.monotonic() - started
        record.state = StageState.FAILED
        record.error_kind = ErrorKind.CANCELLED
        record.detail = "task cancelled"
        logger.warning(f"✗ {stage.name} cancelled after {record.duration_seconds:.2f}s")
        raise
    except Exception as e:
        result = classify_exception(e)
    record.duration_seconds = time.monotonic() - started

    if not result.ok and result.kind is None:
        kind = ErrorKind.FATAL if result.fatal else ErrorKind.FAILURE
        result = StageResult(ok=False, kind=kind, detail=result.detail, fatal=result.fatal)

    if result.ok:
        record.state = StageState.COMPLETED
        logger.info(f"✓ {stage.name} completed in {record.duration_seconds:.2f}s")
    else:
        record.state = StageState.FAILED
        record.error_kind = result.kind
        record.detail = result.detail
        level = "WARNING" if result.kind is ErrorKind.UNKNOWN_OUTCOME else failure_level
        marker = "⚠" if result.kind is ErrorKind.UNKNOWN_OUTCOME else "✗"
        logger.log(level, f"{marker} {stage.name} {result.kind.value} after {record.duration_seconds:.2f}s: {result.detail}")
    return result


class StageExecutor:
    """Sequential stage runner with per-stage timing and failure policy"""

    async def run(
        self,
        stages: Sequence[Stage],
        context: StageContext,
        output_keys: Optional[Iterable[str]] = None,
    ) -> WorkflowRun:
        """
        Run `stages` in order

        Args:
            stages: Ordered stages
            context: Initial context (mutated in place)
            output_keys: Context keys copied into run.output (default: all)

        Returns:
            WorkflowRun with per-stage records and final status
        """
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Stage names must be unique: {names}")

        run = WorkflowRun(wallet_id=context.wallet_id)
        run.stages = [StageRecord(name=s.name) for s in stages]
        run.status = RunStatus.RUNNING
        output_keys = list(output_keys) if output_keys is not None else None

        try:
            for stage, record in zip(stages, run.stages):
                result = await execute_stage(stage, context, record)
                if not result.ok:
                    run.status = RunStatus.FAILED
                    run.failed_stage = stage.name
                    run.error_kind = result.kind
                    run.detail = result.detail
                    run.escalate = result.fatal
                    break
                context.update(dict(result.output))
            else:
                run.status = RunStatus.COMPLETED
        except asyncio.CancelledError:
            run.status = RunStatus.FAILED
            run.error_kind = ErrorKind.CANCELLED
            run.failed_stage = next((r.name for r in run.stages if r.error_kind is ErrorKind.CANCELLED), None)
            run.detail = "task cancelled"
            raise
        finally:
            run.finished_at = datetime.now(timezone.utc)
            run.output = context.snapshot(output_keys)
            _log_run(run)

        return run


def _log_run(run: WorkflowRun):
    attempted = [r for r in run.stages if r.state is not StageState.PENDING]
    summary = ", ".join(f"{r.name}={r.duration_seconds:.2f}s" for r in attempted if r.duration_seconds is not None)
    if run.succeeded:
        logger.info(f"✅ Run {run.run_id} completed in {run.total_seconds:.1f}s ({summary})")
    elif run.outcome_unknown:
        logger.warning(f"⚠ Run {run.run_id} outcome unknown at {run.failed_stage}: {run.detail}")
    else:
        suffix = " - escalate" if run.escalate else ""
        logger.error(f"❌ Run {run.run_id} failed at {run.failed_stage} ({run.error_kind.value}){suffix}: {run.detail}")


def attempted_stage_names(run: WorkflowRun) -> List[str]:
    return [r.name for r in run.stages if r.state is not StageState.PENDING]

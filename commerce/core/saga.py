"""
Saga orchestration for distributed workflows.

Implements the Saga pattern for distributed transactions with compensating actions.
Checkout workflow: Order → Inventory Reservation → Payment → Confirmation

Every state change is written to a SagaStore so that a saga interrupted by a
crash can be compensated later by `SagaOrchestrator.recover`.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Type

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from commerce.core.errors import StepTimeoutError, TransientError
from commerce.database.models import SagaInstance
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_RETRY_DELAY_SECONDS = 10

ForwardAction = Callable[[Dict[str, Any]], Awaitable[Any]]
CompensatingAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    FAILED = "failed"


class StepStatus(Enum):
    """Step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INDETERMINATE = "indeterminate"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


# A step in one of these states may have had side effects
NEEDS_COMPENSATION = (
    StepStatus.COMPLETED,
    StepStatus.TIMED_OUT,
    StepStatus.INDETERMINATE,
    StepStatus.RUNNING,
)
UNFINISHED_STATES = (SagaState.PENDING, SagaState.IN_PROGRESS, SagaState.COMPENSATING)


class SagaStep:
    """
    Represents a single step in a saga.

    Each step has:
    - Forward action (the main operation), retried on transient errors
    - Compensating action (rollback/undo operation), which must be idempotent
    """

    def __init__(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
        retry_base_delay: float = 0.5,
    ):
        """
        Initialize saga step.

        Args:
            name: Step name
            forward_action: Async function to execute
            compensating_action: Async function to compensate/rollback
            timeout_seconds: Timeout for a single attempt
            max_attempts: Attempts for both the forward and compensating action
            retry_on: Exception types that trigger a retry of the forward action
            retry_base_delay: Base delay for exponential backoff (seconds)
        """
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.retry_on = retry_on
        self.retry_base_delay = retry_base_delay

    def _retrying(self, retry_on: Tuple[Type[BaseException], ...]) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=MAX_RETRY_DELAY_SECONDS),
            reraise=True,
        )

    async def _attempt(self, action: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(action, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StepTimeoutError(
                f"Step {self.name} timed out after {self.timeout_seconds}s",
                details={"step": self.name},
            ) from e

    def max_duration_seconds(self) -> float:
        """Worst case for all forward attempts plus all compensation attempts."""
        backoff = sum(
            min(self.retry_base_delay * 2 ** (n - 1), MAX_RETRY_DELAY_SECONDS)
            for n in range(1, self.max_attempts)
        )
        one_pass = self.max_attempts * self.timeout_seconds + backoff
        return one_pass * 2 if self.compensating_action is not None else one_pass

    async def execute(self, context: Dict[str, Any], record: "StepRecord") -> Any:
        """
        Execute the forward action with timeout and retries.

        Raises:
            Exception: The last error once retries are exhausted
        """
        result = None
        async for attempt in self._retrying(self.retry_on):
            with attempt:
                record.attempts = attempt.retry_state.attempt_number
                if record.attempts > 1:
                    logger.warning("saga_step_retrying", step=self.name, attempt=record.attempts)
                result = await self._attempt(self.forward_action(context))
        return result

    async def compensate(self, context: Dict[str, Any], result: Any) -> None:
        """Execute the compensating action with the step timeout, retrying on any error."""
        if self.compensating_action is None:
            return
        async for attempt in self._retrying((Exception,)):
            with attempt:
                await self._attempt(self.compensating_action(context, result))


class SagaDefinition:
    """
    Named, reusable list of steps.

    Definitions are registered with the orchestrator so that sagas persisted
    by another process can be rebuilt and compensated.
    """

    def __init__(
        self,
        name: str,
        default_timeout_seconds: float = 30.0,
        default_max_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ):
        self.name = name
        self.default_timeout_seconds = default_timeout_seconds
        self.default_max_attempts = default_max_attempts
        self.retry_base_delay = retry_base_delay
        self.steps: List[SagaStep] = []

    def add_step(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    ) -> "SagaDefinition":
        """
        Add a step to the saga.

        Returns:
            SagaDefinition: Self for method chaining
        """
        if any(step.name == name for step in self.steps):
            raise ValueError(f"Duplicate step name: {name}")
        self.steps.append(
            SagaStep(
                name=name,
                forward_action=forward_action,
                compensating_action=compensating_action,
                timeout_seconds=timeout_seconds or self.default_timeout_seconds,
                max_attempts=max_attempts or self.default_max_attempts,
                retry_on=retry_on,
                retry_base_delay=self.retry_base_delay,
            )
        )
        return self

    def max_duration_seconds(self) -> float:
        """Upper bound on one run of the saga, compensation included."""
        return sum(step.max_duration_seconds() for step in self.steps)

    def get_step(self, name: str) -> SagaStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)


@dataclass
class StepRecord:
    """Per-execution outcome of one step."""

    name: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(
            name=data["name"],
            status=StepStatus(data["status"]),
            attempts=data.get("attempts", 0),
            error=data.get("error"),
            duration_seconds=data.get("duration_seconds", 0.0),
        )


@dataclass
class SagaResult:
    """Outcome of a saga execution or recovery."""

    saga_id: str
    name: str
    state: SagaState
    context: Dict[str, Any]
    error: Optional[str] = None
    failed_step: Optional[str] = None
    steps_completed: int = 0
    steps_compensated: int = 0
    cause: Optional[BaseException] = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.state == SagaState.COMPLETED


class SagaStore(Protocol):
    """Persistence for saga snapshots."""

    async def save(self, snapshot: Dict[str, Any]) -> None:
        ...

    async def load_unfinished(self, updated_before: datetime) -> List[Dict[str, Any]]:
        ...


class SqlSagaStore:
    """SagaStore backed by the saga_instances table. Each save is its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, snapshot: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            instance = await db.get(SagaInstance, uuid.UUID(snapshot["saga_id"]))
            if instance is None:
                instance = SagaInstance(
                    id=uuid.UUID(snapshot["saga_id"]),
                    name=snapshot["name"],
                    created_at=datetime.utcnow(),
                )
                db.add(instance)
            instance.state = snapshot["state"]
            instance.context = snapshot["context"]
            instance.step_log = snapshot["steps"]
            instance.error = snapshot.get("error")
            instance.updated_at = datetime.utcnow()
            if snapshot["state"] in (
                SagaState.COMPLETED.value,
                SagaState.COMPENSATED.value,
                SagaState.FAILED.value,
            ):
                instance.completed_at = datetime.utcnow()
            await db.commit()

    async def load_unfinished(self, updated_before: datetime) -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            stmt = (
                select(SagaInstance)
                .where(SagaInstance.state.in_([s.value for s in UNFINISHED_STATES]))
                .where(SagaInstance.updated_at < updated_before)
                .order_by(SagaInstance.created_at)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [
                {
                    "saga_id": str(row.id),
                    "name": row.name,
                    "state": row.state,
                    "context": dict(row.context or {}),
                    "steps": list(row.step_log or []),
                    "error": row.error,
                }
                for row in rows
            ]


class Saga:
    """
    Represents one execution of a saga definition.

    Executes steps in order. If any step fails, executes compensating
    actions in reverse order for every step that may have had an effect.
    """

    def __init__(
        self,
        definition: SagaDefinition,
        saga_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        store: Optional[SagaStore] = None,
    ):
        self.definition = definition
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = definition.name
        self.context: Dict[str, Any] = dict(context or {})
        self.context.setdefault("saga_id", self.saga_id)
        self.store = store
        self.state = SagaState.PENDING
        self.records: List[StepRecord] = [StepRecord(name=step.name) for step in definition.steps]
        self.error: Optional[str] = None
        self.failed_step: Optional[str] = None
        self.cause: Optional[BaseException] = None
        self.created_at = datetime.utcnow()
        self.completed_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(
        cls, definition: SagaDefinition, snapshot: Dict[str, Any], store: Optional[SagaStore]
    ) -> "Saga":
        saga = cls(definition, saga_id=snapshot["saga_id"], context=snapshot["context"], store=store)
        saga.state = SagaState(snapshot["state"])
        saga.error = snapshot.get("error")
        logged = {entry["name"]: StepRecord.from_dict(entry) for entry in snapshot["steps"]}
        saga.records = [logged.get(step.name, StepRecord(name=step.name)) for step in definition.steps]
        return saga

    def snapshot(self) -> Dict[str, Any]:
        return {
            "saga_id": self.saga_id,
            "name": self.name,
            "state": self.state.value,
            "context": self.context,
            "steps": [record.to_dict() for record in self.records],
            "error": self.error,
        }

    async def _persist(self) -> None:
        if self.store is not None:
            await self.store.save(self.snapshot())

    @staticmethod
    def _failure_status(error: BaseException) -> StepStatus:
        # Retries exhausted on a transient error: the step may have taken effect
        if isinstance(error, StepTimeoutError):
            return StepStatus.TIMED_OUT
        if isinstance(error, TransientError):
            return StepStatus.INDETERMINATE
        return StepStatus.FAILED

    def _result(self) -> SagaResult:
        return SagaResult(
            saga_id=self.saga_id,
            name=self.name,
            state=self.state,
            context=self.context,
            error=self.error,
            failed_step=self.failed_step,
            steps_completed=sum(
                1
                for r in self.records
                if r.status in (StepStatus.COMPLETED, StepStatus.COMPENSATED, StepStatus.COMPENSATION_FAILED)
            ),
            steps_compensated=sum(1 for r in self.records if r.status == StepStatus.COMPENSATED),
            cause=self.cause,
        )

    async def execute(self) -> SagaResult:
        """
        Execute the saga.

        Returns:
            SagaResult: COMPLETED, or COMPENSATED/FAILED after a step failure
        """
        logger.info("saga_execution_started", saga_id=self.saga_id, name=self.name)
        self.state = SagaState.IN_PROGRESS
        await self._persist()

        for step, record in zip(self.definition.steps, self.records):
            record.status = StepStatus.RUNNING
            await self._persist()
            logger.info("saga_step_executing", saga_id=self.saga_id, step=step.name)
            started = time.perf_counter()

            try:
                result = await step.execute(self.context, record)
            except Exception as e:
                record.duration_seconds = time.perf_counter() - started
                record.status = self._failure_status(e)
                record.error = str(e)
                self.error = str(e)
                self.failed_step = step.name
                self.cause = e
                logger.error(
                    "saga_step_failed",
                    saga_id=self.saga_id,
                    step=step.name,
                    status=record.status.value,
                    attempts=record.attempts,
                    error=str(e),
                )
                await self.compensate()
                return self._result()

            record.duration_seconds = time.perf_counter() - started
            record.status = StepStatus.COMPLETED
            self.context[f"{step.name}_result"] = result
            metrics.record_saga_step(self.name, step.name, record.duration_seconds)
            logger.info("saga_step_completed", saga_id=self.saga_id, step=step.name)

        self.state = SagaState.COMPLETED
        self.completed_at = datetime.utcnow()
        await self._persist()

        logger.info(
            "saga_completed_successfully",
            saga_id=self.saga_id,
            steps_completed=len(self.records),
        )
        return self._result()

    async def compensate(self) -> SagaResult:
        """
        Compensate every step that may have had an effect, in reverse order.

        A compensation that still fails after its retries leaves the saga
        FAILED; it then needs manual intervention.
        """
        self.state = SagaState.COMPENSATING
        await self._persist()

        pending = [
            (step, record)
            for step, record in zip(self.definition.steps, self.records)
            if record.status in NEEDS_COMPENSATION
        ]
        logger.info(
            "saga_compensation_started",
            saga_id=self.saga_id,
            steps_to_compensate=len(pending),
        )

        all_compensated = True
        for step, record in reversed(pending):
            if step.compensating_action is None:
                logger.info("saga_step_no_compensation", saga_id=self.saga_id, step=step.name)
                continue

            logger.info("saga_step_compensating", saga_id=self.saga_id, step=step.name)
            try:
                await step.compensate(self.context, self.context.get(f"{step.name}_result"))
            except Exception as e:
                all_compensated = False
                record.status = StepStatus.COMPENSATION_FAILED
                record.error = str(e)
                logger.error(
                    "saga_step_compensation_failed",
                    saga_id=self.saga_id,
                    step=step.name,
                    error=str(e),
                )
            else:
                record.status = StepStatus.COMPENSATED
                logger.info("saga_step_compensated", saga_id=self.saga_id, step=step.name)
            await self._persist()

        self.state = SagaState.COMPENSATED if all_compensated else SagaState.FAILED
        self.completed_at = datetime.utcnow()
        await self._persist()

        log = logger.info if all_compensated else logger.error
        log("saga_compensation_finished", saga_id=self.saga_id, state=self.state.value)
        return self._result()


class SagaOrchestrator:
    """
    Orchestrates and tracks multiple sagas.

    Provides saga lifecycle management, persistence and crash recovery.
    """

    def __init__(self, store: Optional[SagaStore] = None) -> None:
        self.store = store
        self.definitions: Dict[str, SagaDefinition] = {}
        self.active_sagas: Dict[str, Saga] = {}
        logger.info("saga_orchestrator_initialized", persistent=store is not None)

    def register(self, definition: SagaDefinition) -> SagaDefinition:
        self.definitions[definition.name] = definition
        return definition

    def create_saga(
        self, name: str, context: Optional[Dict[str, Any]] = None, saga_id: Optional[str] = None
    ) -> Saga:
        """
        Create a new saga from a registered definition.

        Raises:
            KeyError: If no definition is registered under `name`
        """
        saga = Saga(self.definitions[name], saga_id=saga_id, context=context, store=self.store)
        self.active_sagas[saga.saga_id] = saga
        logger.info("saga_created", saga_id=saga.saga_id, name=name)
        return saga

    async def execute_saga(self, saga: Saga) -> SagaResult:
        """Execute a saga and track it while it runs."""
        self.active_sagas[saga.saga_id] = saga
        try:
            result = await saga.execute()
        finally:
            self.active_sagas.pop(saga.saga_id, None)

        metrics.record_saga(saga.name, result.state.value)
        return result

    async def run(self, name: str, context: Optional[Dict[str, Any]] = None) -> SagaResult:
        return await self.execute_saga(self.create_saga(name, context))

    def get_saga(self, saga_id: str) -> Optional[Saga]:
        return self.active_sagas.get(saga_id)

    def get_active_sagas_count(self) -> int:
        return len(self.active_sagas)

    async def recover(self, stale_after_seconds: float) -> List[SagaResult]:
        """
        Compensate sagas abandoned mid-flight (e.g. by a crashed process).

        Sagas are never resumed forward: a step that was RUNNING when the
        process died has an unknown outcome, so the whole saga is rolled back.
        """
        if self.store is None:
            return []

        cutoff = datetime.utcnow() - timedelta(seconds=stale_after_seconds)
        snapshots = await self.store.load_unfinished(cutoff)
        results: List[SagaResult] = []

        for snapshot in snapshots:
            if snapshot["saga_id"] in self.active_sagas:
                continue
            definition = self.definitions.get(snapshot["name"])
            if definition is None:
                logger.error(
                    "saga_recovery_unknown_definition",
                    saga_id=snapshot["saga_id"],
                    name=snapshot["name"],
                )
                continue

            saga = Saga.from_snapshot(definition, snapshot, self.store)
            logger.warning(
                "saga_recovery_started",
                saga_id=saga.saga_id,
                name=saga.name,
                state=saga.state.value,
            )
            saga.error = saga.error or "recovered after interruption"
            result = await saga.compensate()
            metrics.record_saga_recovery(saga.name, result.state.value)
            results.append(result)

        return results

"""Task executor.

Runs a task's steps strictly in declared order, threading results between
them through the run context:
- Each step is bound to a typed handler callable before the loop starts
- Parameters are resolved against the context right before dispatch
- Every dispatch is bounded by a timeout
- Failed data_collection/processing steps are recorded and skipped over;
  a failed delivery step aborts the run
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from loguru import logger

from .models import Step, Task
from .registry import Operation, lookup
from .schedule import now_ms
from .templates import build_run_context, find_references, resolve_parameters
from .types import ExecutionRecord, RunStatus, StepResult, StepStatus

logger = logger.bind(module="scheduler.executor")


# ============== Protocol Definitions ==============

@dataclass(frozen=True)
class RunScope:
    """What a handler may know about the run it is serving."""
    task: Task
    step: Step
    context: Mapping[str, Any]

    @property
    def owner(self) -> str:
        return self.task.owner

    @property
    def timezone(self) -> str:
        return self.task.timezone


StepCallable = Callable[[dict[str, Any], RunScope], Awaitable[Any]]


class ServiceHandler(Protocol):
    """Adapter between steps of one service and its external client."""

    service: str

    def resolve(self, operation: str) -> StepCallable | None:
        """Return the callable serving an operation, or None if unsupported."""
        ...


@dataclass
class BoundStep:
    """A step paired with the callable that will run it."""
    step: Step
    operation: Operation | None
    call: StepCallable | None
    error: str | None = None


class TaskExecutor:
    """Executes tasks by dispatching their steps to service handlers."""

    def __init__(
        self,
        handlers: Iterable[ServiceHandler],
        step_timeout_seconds: float = 60.0,
        strict_delivery_dependencies: bool = True,
    ):
        """Initialize executor.

        Args:
            handlers: One handler per service name
            step_timeout_seconds: Upper bound for a single step dispatch
            strict_delivery_dependencies: Fail a delivery step whose
                parameters reference the output of a failed earlier step
        """
        self.handlers: dict[str, ServiceHandler] = {h.service: h for h in handlers}
        self.step_timeout_seconds = step_timeout_seconds
        self.strict_delivery_dependencies = strict_delivery_dependencies

    def bind(self, task: Task) -> list[BoundStep]:
        """Bind each step of a task to its handler callable."""
        bound: list[BoundStep] = []
        for step in task.steps:
            operation = lookup(step.service, step.operation)
            if operation is None:
                bound.append(BoundStep(step, None, None, f"Unknown operation: {step.action}"))
                continue

            handler = self.handlers.get(operation.service)
            if handler is None:
                bound.append(BoundStep(step, operation, None, f"Unknown service: {step.service}"))
                continue

            call = handler.resolve(operation.operation)
            if call is None:
                bound.append(BoundStep(
                    step, operation, None,
                    f"Operation {step.action} is not supported by the {step.service} handler",
                ))
                continue

            bound.append(BoundStep(step, operation, call))
        return bound

    async def execute(self, task: Task) -> ExecutionRecord:
        """Execute every step of a task.

        Args:
            task: Task to run

        Returns:
            Finalized execution record. Step failures are captured in the
            record and never raised.
        """
        logger.info(f"Executing task {task.id}: {task.name} (owner: {task.owner})")

        record = ExecutionRecord(task_id=task.id, started_at_ms=now_ms())

        try:
            context = build_run_context(task.timezone)
            failed_bindings: set[str] = set()
            delivery_failed = False

            for item in self.bind(task):
                result = await self._run_step(item, task, context, failed_bindings)
                record.steps.append(result)
                binding = item.step.output_binding

                if result.ok:
                    if binding:
                        context[binding] = result.data
                    continue

                if binding:
                    failed_bindings.add(binding)

                if item.step.is_delivery:
                    delivery_failed = True
                    record.error = f"Delivery step {result.action} failed: {result.error}"
                    logger.error(f"Task {task.id}: {record.error}; aborting run")
                    break

                logger.warning(
                    f"Task {task.id}: step {result.action} failed, continuing: {result.error}"
                )

            record.status = RunStatus.FAILED if delivery_failed else RunStatus.COMPLETED

        except Exception as e:
            logger.exception(f"Task {task.id} run failed: {e}")
            record.status = RunStatus.FAILED
            record.error = f"Run failed: {e}"

        record.completed_at_ms = now_ms()
        record.duration_ms = record.completed_at_ms - record.started_at_ms

        logger.info(
            f"Task {task.id} finished with status {record.status.value} "
            f"in {record.duration_ms}ms ({len(record.failed_steps)} failed steps)"
        )
        return record

    async def _run_step(
        self,
        item: BoundStep,
        task: Task,
        context: dict[str, Any],
        failed_bindings: set[str],
    ) -> StepResult:
        step = item.step
        started = now_ms()

        def failure(message: str) -> StepResult:
            return StepResult(
                action=step.action,
                kind=step.kind,
                status=StepStatus.FAILED,
                error=message,
                duration_ms=now_ms() - started,
            )

        if item.call is None:
            return failure(item.error or f"Cannot dispatch {step.action}")

        if self.strict_delivery_dependencies and step.is_delivery:
            starved = sorted(find_references(step.parameters) & failed_bindings)
            if starved:
                return failure(f"Upstream step failed: {', '.join(starved)} unavailable")

        logger.debug(f"Task {task.id}: running {step.kind.value} step {step.action}")
        params = resolve_parameters(step.parameters, context)
        scope = RunScope(task=task, step=step, context=dict(context))

        try:
            data = await asyncio.wait_for(item.call(params, scope), timeout=self.step_timeout_seconds)
        except asyncio.TimeoutError:
            return failure(f"Step timed out after {self.step_timeout_seconds:g}s")
        except Exception as e:
            return failure(str(e) or type(e).__name__)

        return StepResult(
            action=step.action,
            kind=step.kind,
            status=StepStatus.SUCCESS,
            data=data,
            duration_ms=now_ms() - started,
        )

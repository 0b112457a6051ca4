"""
Compensating step runner.

Used by order creation: every inventory reservation is a step whose
compensation releases it, so a failure on a later item (or on the order
insert) undoes everything reserved earlier in the same call.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

ForwardAction = Callable[[Dict[str, Any]], Awaitable[Any]]
CompensatingAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class StepStatus(Enum):
    """Step execution status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class SagaStep:
    """
    Represents a single step in a saga.

    Each step has:
    - Forward action (the main operation)
    - Compensating action (rollback/undo operation)
    """

    def __init__(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ):
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.status = StepStatus.PENDING
        self.result: Optional[Any] = None
        self.error: Optional[str] = None

    async def execute(self, context: Dict[str, Any]) -> Any:
        """
        Execute the forward action.

        Raises:
            Exception: Whatever the forward action raised
        """
        try:
            self.result = await self.forward_action(context)
            self.status = StepStatus.COMPLETED
            return self.result
        except BaseException as e:
            self.status = StepStatus.FAILED
            self.error = str(e) or type(e).__name__
            logger.info("saga_step_failed", step=self.name, error=self.error)
            raise

    async def compensate(self, context: Dict[str, Any]) -> None:
        """Execute the compensating action of a completed step."""
        if self.compensating_action is None or self.status != StepStatus.COMPLETED:
            return

        try:
            await self.compensating_action(context, self.result)
            self.status = StepStatus.COMPENSATED
        except Exception as e:
            self.status = StepStatus.COMPENSATION_FAILED
            # Left for manual intervention; the caller sees the step failure.
            logger.error("saga_step_compensation_failed", step=self.name, error=str(e))


class Saga:
    """
    Ordered steps with compensating actions.

    If any step fails, completed steps are compensated in reverse order and
    the step failure is re-raised.
    """

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = {}
        self.completed_at: Optional[datetime] = None

    def add_step(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ) -> "Saga":
        """
        Add a step to the saga.

        Returns:
            Saga: Self for method chaining
        """
        self.steps.append(SagaStep(name, forward_action, compensating_action))
        return self

    async def execute(self) -> Dict[str, Any]:
        """
        Execute all steps in order.

        Returns:
            Dict[str, Any]: Shared context with ``<step>_result`` entries

        Raises:
            BaseException: The first step failure or cancellation, after compensation
        """
        logger.debug("saga_execution_started", saga_id=self.saga_id, name=self.name)
        self.state = SagaState.IN_PROGRESS
        completed: List[SagaStep] = []

        try:
            for step in self.steps:
                result = await step.execute(self.context)
                completed.append(step)
                self.context[f"{step.name}_result"] = result
        except BaseException as e:
            # Cancellation too: completed steps are always undone.
            logger.info(
                "saga_compensating",
                saga_id=self.saga_id,
                name=self.name,
                error=str(e) or type(e).__name__,
                steps_to_compensate=len(completed),
            )
            self.state = SagaState.COMPENSATING
            await asyncio.shield(self._compensate(completed))
            raise

        self.state = SagaState.COMPLETED
        self.completed_at = datetime.now(timezone.utc)
        logger.debug("saga_completed", saga_id=self.saga_id, steps_completed=len(completed))
        return self.context

    async def _compensate(self, completed: List[SagaStep]) -> None:
        """Undo completed steps newest first, shielded from caller cancellation."""
        for step in reversed(completed):
            await step.compensate(self.context)
        self.state = SagaState.COMPENSATED
        self.completed_at = datetime.now(timezone.utc)

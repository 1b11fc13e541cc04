"""
Saga orchestration for multi-store commits.

Implements the Saga pattern for commits that span stores without a shared
transaction: steps run in a fixed order and, if one fails, the compensating
actions of the completed steps run in reverse order before the original
error is re-raised.

Compensation failures are never swallowed. If any compensating action
fails, the saga raises PersistenceFailureError(partial=True) chained to the
original error so an operator knows manual reconciliation is needed.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from storeledger.core.exceptions import PersistenceFailureError
from storeledger.monitoring.metrics import saga_compensations_total

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
    PARTIALLY_COMPENSATED = "partially_compensated"


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
    - Compensating action (undo of the forward action, given its result)
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
            Exception: If step execution fails
        """
        logger.debug("saga_step_executing", step=self.name)

        try:
            self.result = await self.forward_action(context)
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = str(e)
            logger.warning("saga_step_failed", step=self.name, error=str(e))
            raise

        self.status = StepStatus.COMPLETED
        logger.debug("saga_step_completed", step=self.name)
        return self.result

    async def compensate(self, context: Dict[str, Any]) -> None:
        """
        Execute the compensating action.

        Raises:
            Exception: If the compensating action fails
        """
        if self.status != StepStatus.COMPLETED:
            return

        if self.compensating_action is None:
            logger.warning("saga_step_no_compensation", step=self.name)
            return

        logger.info("saga_step_compensating", step=self.name)

        try:
            await self.compensating_action(context, self.result)
        except Exception as e:
            self.status = StepStatus.COMPENSATION_FAILED
            self.error = str(e)
            logger.error("saga_step_compensation_failed", step=self.name, error=str(e))
            raise

        self.status = StepStatus.COMPENSATED
        logger.info("saga_step_compensated", step=self.name)


class Saga:
    """
    Ordered steps with compensating actions.

    Results of completed steps are stored in the shared context under
    "<step name>_result" for later steps.
    """

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = {}
        self.created_at = datetime.now(timezone.utc)
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
            Dict[str, Any]: The shared context with every step's result

        Raises:
            Exception: The first step error, after successful compensation
            PersistenceFailureError: partial=True if compensation failed
        """
        logger.info("saga_execution_started", saga_id=self.saga_id, name=self.name)

        self.state = SagaState.IN_PROGRESS
        completed_steps: List[SagaStep] = []

        try:
            for step in self.steps:
                result = await step.execute(self.context)
                completed_steps.append(step)
                self.context[f"{step.name}_result"] = result
        except BaseException as e:
            # Once a step has committed, cancellation must not skip compensation
            await asyncio.shield(self._compensate(completed_steps, e))
            raise

        self.state = SagaState.COMPLETED
        self.completed_at = datetime.now(timezone.utc)

        logger.info(
            "saga_completed_successfully",
            saga_id=self.saga_id,
            name=self.name,
            steps_completed=len(completed_steps),
        )
        return self.context

    async def _compensate(self, completed_steps: List[SagaStep], cause: BaseException) -> None:
        """
        Execute compensating actions for completed steps in reverse order.

        Every compensation is attempted even if an earlier one fails.
        """
        if not completed_steps:
            return

        self.state = SagaState.COMPENSATING
        logger.info(
            "saga_compensation_started",
            saga_id=self.saga_id,
            name=self.name,
            steps_to_compensate=len(completed_steps),
            cause=str(cause),
        )

        failed_steps: List[str] = []
        for step in reversed(completed_steps):
            try:
                await step.compensate(self.context)
            except Exception:
                failed_steps.append(step.name)

        self.completed_at = datetime.now(timezone.utc)

        if failed_steps:
            self.state = SagaState.PARTIALLY_COMPENSATED
            saga_compensations_total.labels(saga=self.name, outcome="partial").inc()
            logger.critical(
                "saga_compensation_incomplete",
                saga_id=self.saga_id,
                name=self.name,
                failed_steps=failed_steps,
            )
            raise PersistenceFailureError(
                f"Saga {self.name} could not compensate steps {failed_steps}; "
                "manual reconciliation required",
                partial=True,
                saga_id=self.saga_id,
                failed_steps=",".join(failed_steps),
            ) from cause

        self.state = SagaState.COMPENSATED
        saga_compensations_total.labels(saga=self.name, outcome="compensated").inc()
        logger.info("saga_compensation_completed", saga_id=self.saga_id, name=self.name)

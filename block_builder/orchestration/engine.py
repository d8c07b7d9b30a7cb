"""Checkpointing executor for the block builder workflow."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from ..config import Config
from ..connectors.base import CatalogConnector, DesignSourceConnector, GenerationConnector
from ..exceptions import ThreadBusyError, WorkflowCancelledError, WorkflowNotFoundError
from ..models.workflow import AwaitingInput, WorkflowError, WorkflowInput, WorkflowState, WorkflowStep
from ..reporting import export_state_summary
from ..utils.cancellation import CancellationToken
from ..utils.resilience import CircuitBreakerRegistry
from ..utils.retry import DefaultErrorClassifier, ErrorClassifier, SleepFunc
from .context import RunContext
from .graph import END, INITIALIZE, SUSPEND, GraphError, apply_update, route, stage_for
from .state_store import StateStore, StoredStateInfo, checkpoint_prefix, get_state_store, validate_thread_id
from .steps import STAGES, resume_update

logger = logging.getLogger(__name__)


class WorkflowOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    # Only for stored checkpoints of interrupted runs; executed runs never end here
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class WorkflowResult:
    """Tagged result of ``run``, ``resume`` and ``recover``."""

    outcome: WorkflowOutcome
    thread_id: str
    state: WorkflowState

    @property
    def errors(self) -> List[WorkflowError]:
        return list(self.state.errors)

    @property
    def awaiting_input(self) -> Optional[AwaitingInput]:
        return self.state.awaiting_user_input

    @property
    def completed(self) -> bool:
        return self.outcome == WorkflowOutcome.COMPLETED

    @property
    def failed(self) -> bool:
        return self.outcome == WorkflowOutcome.FAILED

    @property
    def suspended(self) -> bool:
        return self.outcome == WorkflowOutcome.SUSPENDED

    def summary(self) -> str:
        return export_state_summary(self.state)

    @classmethod
    def from_state(cls, thread_id: str, state: WorkflowState) -> "WorkflowResult":
        if state.current_step == WorkflowStep.COMPLETED:
            outcome = WorkflowOutcome.COMPLETED
        elif state.current_step == WorkflowStep.FAILED:
            outcome = WorkflowOutcome.FAILED
        elif state.current_step == WorkflowStep.AWAITING_INPUT:
            outcome = WorkflowOutcome.SUSPENDED
        else:
            outcome = WorkflowOutcome.IN_PROGRESS
        return cls(outcome=outcome, thread_id=thread_id, state=state)


class WorkflowEngine:
    """Drives workflow states through the stage graph.

    A checkpoint is written for the thread after every stage, before the next
    edge is chosen, so a restarted process can always continue from the last
    persisted state with :meth:`recover`.

    Circuit breakers are owned by the engine and shared by every run it
    executes, so repeated runs against a degraded connector fail fast.
    """

    def __init__(
        self,
        design_source: DesignSourceConnector,
        generator: GenerationConnector,
        catalog: Optional[CatalogConnector] = None,
        store: Optional[StateStore] = None,
        config: Optional[Config] = None,
        classifier: Optional[ErrorClassifier] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self.config = config or Config()
        self.design_source = design_source
        self.generator = generator
        self.catalog = catalog
        self.store = store or get_state_store(self.config)
        self.classifier = classifier or DefaultErrorClassifier()
        self.breakers = breakers or CircuitBreakerRegistry(self.config.circuit_breaker_config())
        self.retry_config = self.config.retry_config()
        self._sleep = sleep

    def _context(self, cancel_token: Optional[CancellationToken]) -> RunContext:
        return RunContext(
            design_source=self.design_source,
            generator=self.generator,
            catalog=self.catalog,
            breakers=self.breakers,
            retry_config=self.retry_config,
            classifier=self.classifier,
            call_timeout=self.config.call_timeout,
            cancel_token=cancel_token or CancellationToken(),
            sleep=self._sleep,
        )

    async def _load(self, thread_id: str) -> Optional[WorkflowState]:
        return await asyncio.to_thread(self.store.load, thread_id)

    async def _save(self, state: WorkflowState, thread_id: str) -> None:
        await asyncio.to_thread(self.store.save, state, thread_id)

    async def _require(self, thread_id: str) -> WorkflowState:
        validate_thread_id(thread_id)
        state = await self._load(thread_id)
        if state is None:
            raise WorkflowNotFoundError(thread_id)
        return state

    async def run(
        self,
        workflow_input: WorkflowInput,
        thread_id: str,
        cancel_token: Optional[CancellationToken] = None,
        replace: bool = False,
    ) -> WorkflowResult:
        """Start a new workflow instance on ``thread_id``.

        Raises:
            ThreadBusyError: If the thread holds a suspended or in-progress
                workflow and ``replace`` is False
            WorkflowCancelledError: If ``cancel_token`` fires
            StateStoreError: If ``thread_id`` is not a valid thread id or a
                checkpoint cannot be written
        """
        validate_thread_id(thread_id)
        if not replace:
            existing = await self._load(thread_id)
            if existing is not None and not existing.is_terminal:
                raise ThreadBusyError(thread_id, existing.current_step.value)

        logger.info(f"Starting workflow '{thread_id}' for block '{workflow_input.name}'")
        state = WorkflowState(input=workflow_input)
        await self._save(state, thread_id)
        return await self._execute(thread_id, state, INITIALIZE, cancel_token)

    async def resume(
        self,
        thread_id: str,
        payload: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowResult:
        """Continue a suspended workflow with externally supplied input.

        Resuming a thread that is not suspended returns the stored state unchanged.

        Raises:
            WorkflowNotFoundError: If the thread has no checkpoint
            StateStoreError: If ``thread_id`` is not a valid thread id
            ResumePayloadError: If ``payload`` does not fit the expected input
                (the checkpoint is left untouched)
        """
        state = await self._require(thread_id)
        if not state.is_suspended:
            logger.info(f"Workflow '{thread_id}' is not awaiting input (step {state.current_step.value})")
            return WorkflowResult.from_state(thread_id, state)

        state = apply_update(state, resume_update(state, payload))
        await self._save(state, thread_id)
        logger.info(f"Resuming workflow '{thread_id}' at {state.current_step.value}")
        return await self._execute(thread_id, state, stage_for(state), cancel_token)

    async def recover(self, thread_id: str, cancel_token: Optional[CancellationToken] = None) -> WorkflowResult:
        """Continue a workflow interrupted mid-run from its last checkpoint.

        Suspended and finished workflows are returned unchanged.

        Raises:
            WorkflowNotFoundError: If the thread has no checkpoint
            StateStoreError: If ``thread_id`` is not a valid thread id
        """
        state = await self._require(thread_id)
        finished = state.current_step == WorkflowStep.COMPLETED or (
            state.current_step == WorkflowStep.FAILED and state.end_time is not None
        )
        if state.is_suspended or finished:
            return WorkflowResult.from_state(thread_id, state)

        stage = stage_for(state)
        logger.info(f"Recovering workflow '{thread_id}' at stage {stage}")
        return await self._execute(thread_id, state, stage, cancel_token)

    async def get_state(self, thread_id: str) -> Optional[WorkflowState]:
        return await self._load(thread_id)

    async def list_threads(self) -> List[StoredStateInfo]:
        return await asyncio.to_thread(self.store.list_threads)

    async def _execute(
        self,
        thread_id: str,
        state: WorkflowState,
        stage: str,
        cancel_token: Optional[CancellationToken],
    ) -> WorkflowResult:
        ctx = self._context(cancel_token)
        transitions = 0

        while True:
            ctx.cancel_token.raise_if_cancelled()
            transitions += 1
            if transitions > self.config.max_transitions:
                raise GraphError(
                    f"Workflow '{thread_id}' exceeded {self.config.max_transitions} transitions"
                )

            logger.debug(f"Workflow '{thread_id}' entering stage {stage}")
            try:
                update = await STAGES[stage](state, ctx)
            except WorkflowCancelledError:
                logger.info(f"Workflow '{thread_id}' cancelled during stage {stage}")
                raise
            except Exception:
                logger.exception(f"Stage {stage} of workflow '{thread_id}' raised an unexpected error")
                raise

            state = apply_update(state, update)
            await self._save(state, thread_id)

            next_stage = route(stage, state)
            if next_stage in (END, SUSPEND):
                break
            stage = next_stage

        result = WorkflowResult.from_state(thread_id, state)
        logger.info(f"Workflow '{thread_id}' {result.outcome.value}")
        await self._write_milestone(thread_id, state, result.outcome.value)
        return result

    async def _write_milestone(self, thread_id: str, state: WorkflowState, label: str) -> None:
        if not self.config.milestone_checkpoints:
            return
        await asyncio.to_thread(self.store.create_checkpoint, state, thread_id, label)
        await asyncio.to_thread(
            self.store.cleanup_old_states,
            self.config.checkpoint_retention,
            checkpoint_prefix(thread_id),
        )

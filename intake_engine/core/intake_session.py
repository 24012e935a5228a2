"""
Intake Session - Caller-side orchestration of one intake

Responsibilities:
- Apply each answer optimistically (record + advance cursor) and dispatch
  the step processor without blocking progression
- Merge reflections by question id as responses arrive, in any order
- Start the speculative early completion after the early-completion step
- Resolve the early/authoritative completion race through the slot
- Offer a completion retry after a failed final step
- Derive the chat transcript from state (deterministic message ids)

Design principles:
- One asyncio loop per session = single writer, no locks
- Forward progress over rollback: a failed reflection never moves the cursor
- Early completion is an optimization only; its failure is logged and dropped
- No cancellation: losing tasks finish and their results are discarded

Status flow:
    READY -> GENERATING_COMPLETION -> COMPLETE
                                   -> COMPLETION_FAILED -> (retry) -> ...
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from intake_engine.contracts import (
    Answer,
    AnswerValue,
    CompletionOutputs,
    QuestionDefinition,
    Resolved,
    SelectionValue,
    StepRequest,
    StepResponse,
)
from intake_engine.core.completion_slot import (
    CompletionSlot,
    SOURCE_EARLY,
    SOURCE_RETRY,
    resolve_completion,
)
from intake_engine.core.session_state import SessionState
from intake_engine.core.step_processor import validate_answer
from intake_engine.errors import GenerationFailure, InvalidStep
from intake_engine.utils.helpers import (
    ROLE_ANSWER,
    ROLE_QUESTION,
    ROLE_REFLECTION,
    generate_session_id,
    message_id,
)
from intake_engine.utils.reflection_templates import (
    REFLECTION_PENDING_TEXT,
    REFLECTION_UNAVAILABLE_TEXT,
)

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    READY = "ready"
    GENERATING_COMPLETION = "generating_completion"
    COMPLETE = "complete"
    COMPLETION_FAILED = "completion_failed"


def display_answer(question: QuestionDefinition, value: AnswerValue) -> str:
    """Answer as shown in the transcript (option display text for selections)"""
    if not isinstance(value, SelectionValue):
        return value.text

    labels = []
    for selected in value.values:
        option = question.option_for(selected)
        label = option.text if option else selected
        if option and option.is_other and value.other_text:
            label = f"{label}: {value.other_text.strip()}"
        labels.append(label)
    return ", ".join(labels)


class IntakeSession:
    """
    Orchestrates one user's pass through an intake.

    Must be driven from inside a running event loop: submit() schedules the
    step processor as a task and returns it.
    """

    def __init__(self, catalog, step_processor, completion_generator,
                 intake_type: str, prompt_version: Optional[str] = None,
                 session_id: Optional[str] = None):
        """
        Args:
            catalog: DefinitionCatalog instance
            step_processor: StepProcessor (async process)
            completion_generator: CompletionGenerator (async generate)
            intake_type: Intake to run
            prompt_version: Optional prompt version forwarded on every call
            session_id: Optional id (generated if omitted)

        Raises:
            UnknownIntake: If the intake type is not registered
            TypeError: If a collaborator lacks the required method
        """
        if not callable(getattr(step_processor, 'process', None)):
            raise TypeError("step_processor must have callable process() method")
        if not callable(getattr(completion_generator, 'generate', None)):
            raise TypeError("completion_generator must have callable generate() method")

        self.intake = catalog.get(intake_type)
        self.step_processor = step_processor
        self.completion_generator = completion_generator
        self.prompt_version = prompt_version
        self.session_id = session_id or generate_session_id()

        self.state = SessionState(self.intake)
        self.slot = CompletionSlot()
        self.status = SessionStatus.READY
        self.last_error: Optional[GenerationFailure] = None

        self._tasks: Set[asyncio.Task] = set()
        self._early_task: Optional[asyncio.Task] = None
        self._final_resolved = False

        logger.info(f"[{self.session_id}] session started ({self.intake.id} v{self.intake.version})")

    # ========================
    # Public API
    # ========================

    @property
    def completion_outputs(self) -> Optional[CompletionOutputs]:
        return self.slot.outputs

    @property
    def early_task(self) -> Optional[asyncio.Task]:
        return self._early_task

    def current_question(self) -> Optional[QuestionDefinition]:
        return self.state.current_question()

    def submit(self, question_id: str, value: AnswerValue) -> asyncio.Task:
        """
        Record an answer and dispatch its step.

        The store is updated before this returns; the step result is merged
        when the returned task finishes.

        Returns:
            asyncio.Task resolving to the StepResponse, or None when the
            step failed with GenerationFailure (recorded on the session)

        Raises:
            InvalidStep: Unknown question or beyond the cursor (nothing written)
            InvalidAnswer: Value does not fit the question (nothing written)
        """
        index = self.state.index_of(question_id)
        if index is None:
            raise InvalidStep(self.intake.id, None, f"unknown question id '{question_id}'")
        validate_answer(self.intake.questions[index], value)

        prior_answers = tuple(self.state.answers_before(question_id))
        self.state.record_answer(question_id, value)

        if index == self.intake.total_steps - 1:
            self.status = SessionStatus.GENERATING_COMPLETION

        request = StepRequest(
            intake_type=self.intake.id,
            step_index=index,
            prior_answers=prior_answers,
            current_answer=value,
            prompt_version=self.prompt_version
        )
        return self._spawn(self._run_step(request, question_id))

    async def retry_completion(self) -> CompletionOutputs:
        """
        Re-run the completion with the current ordered answers.

        Returns:
            The outputs held by the slot

        Raises:
            InvalidStep: If the intake is not finished yet
            GenerationFailure: If the retry fails and no outputs have arrived
                (status stays failed)
        """
        if self.slot.is_set:
            self.status = SessionStatus.COMPLETE
            self.last_error = None
            return self.slot.outputs
        if not self.state.is_finished:
            raise InvalidStep(
                self.intake.id, self.state.answered_count,
                "completion retry before the final answer"
            )

        self.status = SessionStatus.GENERATING_COMPLETION
        logger.info(f"[{self.session_id}] retrying completion")
        try:
            outputs = await self.completion_generator.generate(
                self.intake.id, self.state.ordered_answers(), prompt_version=self.prompt_version
            )
        except GenerationFailure as e:
            if self.slot.is_set:
                logger.warning(f"[{self.session_id}] completion retry failed after outputs arrived: {e}")
                self.status = SessionStatus.COMPLETE
                self.last_error = None
                return self.slot.outputs
            self.status = SessionStatus.COMPLETION_FAILED
            self.last_error = e
            logger.error(f"[{self.session_id}] completion retry failed: {e}")
            raise

        self.slot.offer(outputs, SOURCE_RETRY)
        self._final_resolved = True
        self.status = SessionStatus.COMPLETE
        self.last_error = None
        return self.slot.outputs

    async def wait_idle(self) -> None:
        """Wait until no step or completion task is in flight"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def messages(self) -> List[Dict[str, Any]]:
        """
        Chat transcript derived from state.

        Per answered question: question, answer, reflection (the reflection of
        the last question is not shown). Then the active question, if any.
        """
        items = []
        last_id = self.intake.questions[-1].id

        for answer in self.state.ordered_answers():
            question = self.intake.questions[self.state.index_of(answer.question_id)]
            items.append(self._message(question.id, ROLE_QUESTION, question.prompt))
            items.append(self._message(question.id, ROLE_ANSWER, display_answer(question, answer.value)))
            if question.id != last_id:
                items.append(self._message(question.id, ROLE_REFLECTION, self._reflection_text(answer)))

        current = self.state.current_question()
        if current is not None:
            items.append(self._message(current.id, ROLE_QUESTION, current.prompt))

        return items

    # ========================
    # Step handling
    # ========================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_step(self, request: StepRequest, question_id: str) -> Optional[StepResponse]:
        is_final = request.step_index == self.intake.total_steps - 1

        try:
            response = await self.step_processor.process(request)
        except GenerationFailure as e:
            if self._is_stale(request, question_id):
                logger.info(f"[{question_id}] stale step failure dropped: {e}")
                return None
            logger.error(f"[{self.session_id}] step {request.step_index} ({question_id}) failed: {e}")
            self.state.record_reflection_failure(question_id, str(e))
            if is_final:
                if self.slot.is_set:
                    # Outputs from an earlier final answer stay shown
                    self.status = SessionStatus.COMPLETE
                    self.last_error = None
                else:
                    self.status = SessionStatus.COMPLETION_FAILED
                    self.last_error = e
            return None

        if self._is_stale(request, question_id):
            logger.info(f"[{question_id}] stale step response dropped")
            return response

        self.state.merge_reflection(question_id, response.reflection)

        if response.is_complete:
            self._resolve_final(response.completion_outputs)
        elif request.step_index == self.intake.early_completion_index:
            self._start_early_completion()

        return response

    def _is_stale(self, request: StepRequest, question_id: str) -> bool:
        """True when the question was re-answered while the step was in flight"""
        current = self.state.get_answer(question_id)
        return current is not None and current.value != request.current_answer

    def _resolve_final(self, authoritative: Optional[CompletionOutputs]) -> None:
        resolve_completion(self.slot, self._early_task, authoritative)
        self._final_resolved = True
        self.status = SessionStatus.COMPLETE
        self.last_error = None
        logger.info(f"[{self.session_id}] intake complete (completion from {self.slot.source})")

    # ========================
    # Early completion
    # ========================

    def _start_early_completion(self) -> None:
        if self._early_task is not None or self._final_resolved:
            return

        early_index = self.intake.early_completion_index
        answers = [
            a for a in self.state.ordered_answers()
            if self.state.index_of(a.question_id) <= early_index
        ]
        logger.info(f"[{self.session_id}] starting early completion with {len(answers)} answers")
        self._early_task = self._spawn(self._run_early_completion(answers))

    async def _run_early_completion(self, answers: Sequence[Answer]) -> Optional[CompletionOutputs]:
        try:
            outputs = await self.completion_generator.generate(
                self.intake.id, answers, prompt_version=self.prompt_version
            )
        except Exception as e:
            logger.warning(f"[{self.session_id}] early completion failed (ignored): {e}")
            return None

        if self._final_resolved:
            # Race already settled; the slot discards this
            self.slot.offer(outputs, SOURCE_EARLY)
        return outputs

    # ========================
    # Transcript helpers
    # ========================

    def _reflection_text(self, answer: Answer) -> str:
        if isinstance(answer.reflection, Resolved):
            return answer.reflection.text
        if self.state.reflection_failure(answer.question_id) is not None:
            return REFLECTION_UNAVAILABLE_TEXT
        return REFLECTION_PENDING_TEXT

    @staticmethod
    def _message(question_id: str, role: str, content: str) -> Dict[str, Any]:
        return {'id': message_id(question_id, role), 'role': role, 'content': content}

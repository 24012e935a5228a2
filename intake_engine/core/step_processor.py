"""
Step Processor - One question/answer/reflection cycle (Functional Core)

Responsibilities:
- Validate intake type, step index and answer shape
- Obtain the reflection through the strategy selector
- Decide completeness and either return the next question or run completion
- Fill response metadata (step counters, prompt version, strategy)

Design principles:
- Stateless: every invocation is an independent run
- All session state lives with the caller (SessionState / IntakeSession)
- Fatal caller errors (UnknownIntake, InvalidStep, InvalidAnswer) abort
  before any model call
- No retries: GenerationFailure propagates to the caller

Per-invocation phases:
    VALIDATING -> REFLECTING -> ADVANCING_RETURN
                             -> COMPLETING (last step only)
"""

import logging
from enum import Enum

from intake_engine.contracts import (
    Answer,
    AnswerValue,
    QuestionDefinition,
    QuestionKind,
    SelectionValue,
    StepMetadata,
    StepRequest,
    StepResponse,
    TextValue,
)
from intake_engine.errors import InvalidAnswer

logger = logging.getLogger(__name__)


class StepPhase(str, Enum):
    VALIDATING = "validating"
    REFLECTING = "reflecting"
    COMPLETING = "completing"
    ADVANCING_RETURN = "advancing_return"


def validate_answer(question: QuestionDefinition, value: AnswerValue) -> None:
    """
    Check an answer against its question kind and options.

    Raises:
        InvalidAnswer: If the value does not fit the question
    """
    if question.kind == QuestionKind.TEXT:
        if not isinstance(value, TextValue):
            raise InvalidAnswer(question.id, "text question expects a text answer")
        if not value.text.strip():
            raise InvalidAnswer(question.id, "answer is empty")
        return

    if not isinstance(value, SelectionValue):
        raise InvalidAnswer(question.id, f"{question.kind.value} question expects a selection")

    if not value.values:
        raise InvalidAnswer(question.id, "no option selected")
    if len(set(value.values)) != len(value.values):
        raise InvalidAnswer(question.id, "duplicate option values")

    unknown = [v for v in value.values if question.option_for(v) is None]
    if unknown:
        raise InvalidAnswer(question.id, f"unknown option values {unknown}")

    if question.kind == QuestionKind.SINGLESELECT and len(value.values) != 1:
        raise InvalidAnswer(question.id, "singleselect takes exactly one value")

    if value.other_text is not None:
        if not any(question.option_for(v).is_other for v in value.values):
            raise InvalidAnswer(question.id, "other_text given without an 'other' option")


class StepProcessor:
    """
    Processes one intake step.

    Functional core design:
    - Catalog, strategy selector and completion generator are cached
      (all stateless, safe to share between sessions)
    - process() holds no state between calls
    """

    def __init__(self, catalog, reflection_selector, completion_generator):
        """
        Args:
            catalog: DefinitionCatalog instance
            reflection_selector: ReflectionStrategySelector instance
            completion_generator: CompletionGenerator instance

        Raises:
            TypeError: If any module is missing a required method
        """
        self._validate_modules(catalog, reflection_selector, completion_generator)

        self.catalog = catalog
        self.reflection_selector = reflection_selector
        self.completion_generator = completion_generator

        logger.info("Step processor initialized (stateless)")

    def _validate_modules(self, catalog, reflection_selector, completion_generator):
        """Validate module interfaces"""
        for method in ('get', 'question_at'):
            if not callable(getattr(catalog, method, None)):
                raise TypeError(f"catalog must have callable {method}() method")

        if not callable(getattr(reflection_selector, 'resolve', None)):
            raise TypeError("reflection_selector must have callable resolve() method")

        if not callable(getattr(completion_generator, 'generate', None)):
            raise TypeError("completion_generator must have callable generate() method")

    async def process(self, request: StepRequest) -> StepResponse:
        """
        Run one step.

        Args:
            request: StepRequest (intake type, step index, prior answers,
                current answer, optional prompt version)

        Returns:
            StepResponse

        Raises:
            UnknownIntake: Intake type not in catalog
            InvalidStep: Step index out of range
            InvalidAnswer: Answer does not fit the question
            GenerationFailure: Reflection or completion generation failed
        """
        phase = StepPhase.VALIDATING
        logger.debug(f"[{request.intake_type}] step {request.step_index} phase={phase.value}")
        intake = self.catalog.get(request.intake_type)
        question = self.catalog.question_at(request.intake_type, request.step_index)
        validate_answer(question, request.current_answer)

        phase = StepPhase.REFLECTING
        logger.debug(f"[{question.id}] step {request.step_index} phase={phase.value}")
        directive = await self.reflection_selector.resolve(
            intake, question, request.current_answer, request.prior_answers,
            request.step_index, prompt_version=request.prompt_version
        )

        answer = Answer(
            question_id=question.id,
            question_prompt=question.prompt,
            value=request.current_answer
        ).with_reflection(directive.text)

        is_complete = request.step_index >= intake.total_steps - 1
        metadata = StepMetadata(
            current_step=request.step_index,
            total_steps=intake.total_steps,
            intake_type=intake.id,
            prompt_version=request.prompt_version,
            reflection_strategy=directive.strategy.value
        )

        if not is_complete:
            phase = StepPhase.ADVANCING_RETURN
            logger.debug(f"[{question.id}] step {request.step_index} phase={phase.value}")
            next_question = intake.questions[request.step_index + 1]
            logger.info(
                f"[{question.id}] step {request.step_index + 1}/{intake.total_steps} "
                f"processed, next={next_question.id}"
            )
            return StepResponse(
                reflection=directive.text,
                next_question=next_question.to_client(),
                is_complete=False,
                completion_outputs=None,
                metadata=metadata
            )

        phase = StepPhase.COMPLETING
        logger.debug(f"[{question.id}] step {request.step_index} phase={phase.value}")
        all_answers = tuple(request.prior_answers) + (answer,)
        outputs = await self.completion_generator.generate(
            intake.id, all_answers, prompt_version=request.prompt_version
        )

        logger.info(f"[{question.id}] final step processed, completion generated")
        return StepResponse(
            reflection=directive.text,
            next_question=None,
            is_complete=True,
            completion_outputs=outputs,
            metadata=metadata
        )

"""
Reflection Strategy Selector - How each answer gets acknowledged

Strategies (checked in this order):
1. SKIP: low-signal question, canned acknowledgment, no model call
2. TEMPLATE: selection answer with an exact pre-authored match, no model call
3. GENERATE: one structured call at the small tier

Skip and template never fail. A failed generation propagates as
GenerationFailure; there is no retry here.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from intake_engine.contracts import (
    Answer,
    AnswerValue,
    IntakeDefinition,
    QuestionDefinition,
    SelectionValue,
)
from intake_engine.utils.generation import REFLECTION_SCHEMA, ModelTier
from intake_engine.utils.reflection_templates import find_template

logger = logging.getLogger(__name__)


class ReflectionStrategy(str, Enum):
    SKIP = "skip"
    TEMPLATE = "template"
    GENERATE = "generate"


@dataclass(frozen=True)
class ReflectionDirective:
    """
    Outcome of strategy selection.

    text is set for SKIP and TEMPLATE; GENERATE carries no text until the
    model call returns.
    """
    strategy: ReflectionStrategy
    text: Optional[str] = None


class ReflectionStrategySelector:
    """Chooses and executes a reflection strategy for one answer"""

    def __init__(self, generation, prompt_builder):
        """
        Args:
            generation: GenerationCapability (async generate_structured)
            prompt_builder: PromptBuilder instance

        Raises:
            TypeError: If a collaborator lacks the required method
        """
        if not callable(getattr(generation, 'generate_structured', None)):
            raise TypeError("generation must have callable generate_structured() method")
        if not callable(getattr(prompt_builder, 'build_reflection_prompt', None)):
            raise TypeError("prompt_builder must have callable build_reflection_prompt() method")

        self.generation = generation
        self.prompt_builder = prompt_builder

    def select(self, question: QuestionDefinition, value: AnswerValue) -> ReflectionDirective:
        """Pure selection; never calls the model"""
        if question.is_low_signal:
            return ReflectionDirective(ReflectionStrategy.SKIP, question.skip_reflection)

        if question.kind.is_selection and isinstance(value, SelectionValue):
            template = find_template(question, value)
            if template is not None:
                return ReflectionDirective(ReflectionStrategy.TEMPLATE, template)

        return ReflectionDirective(ReflectionStrategy.GENERATE)

    async def resolve(
        self,
        intake: IntakeDefinition,
        question: QuestionDefinition,
        value: AnswerValue,
        prior_answers: Sequence[Answer],
        step_index: int,
        prompt_version: Optional[str] = None
    ) -> ReflectionDirective:
        """
        Select a strategy and produce the reflection text.

        Returns:
            ReflectionDirective with text always set

        Raises:
            GenerationFailure: If the GENERATE call fails
        """
        directive = self.select(question, value)
        if directive.strategy != ReflectionStrategy.GENERATE:
            logger.info(f"[{question.id}] reflection strategy={directive.strategy.value}")
            return directive

        prompt = self.prompt_builder.build_reflection_prompt(
            intake, question, value, prior_answers, step_index, version=prompt_version
        )
        result = await self.generation.generate_structured(
            REFLECTION_SCHEMA, prompt.user, prompt.system, ModelTier.SMALL
        )
        logger.info(f"[{question.id}] reflection strategy=generate")
        return ReflectionDirective(ReflectionStrategy.GENERATE, result.data["reflection"])

"""
Completion Generator - End-of-intake artifacts

Turns the ordered answer set into the three completion outputs with one
structured call at the large tier.

Design principles:
- Stateless and side-effect free: safe to call concurrently and to retry
  with the same answers (outputs may differ textually)
- Single attempt, no internal retry
- Accepts a partial answer set (speculative early start)
"""

import logging
from typing import Optional, Sequence

from intake_engine.contracts import Answer, CompletionOutputs
from intake_engine.utils.generation import COMPLETION_SCHEMA, ModelTier

logger = logging.getLogger(__name__)


class CompletionGenerator:
    """Generates CompletionOutputs from all answers"""

    def __init__(self, catalog, generation, prompt_builder):
        """
        Args:
            catalog: DefinitionCatalog instance
            generation: GenerationCapability (async generate_structured)
            prompt_builder: PromptBuilder instance

        Raises:
            TypeError: If a collaborator lacks the required method
        """
        if not callable(getattr(catalog, 'get', None)):
            raise TypeError("catalog must have callable get() method")
        if not callable(getattr(generation, 'generate_structured', None)):
            raise TypeError("generation must have callable generate_structured() method")
        if not callable(getattr(prompt_builder, 'build_completion_prompt', None)):
            raise TypeError("prompt_builder must have callable build_completion_prompt() method")

        self.catalog = catalog
        self.generation = generation
        self.prompt_builder = prompt_builder

    async def generate(
        self,
        intake_type: str,
        all_answers: Sequence[Answer],
        prompt_version: Optional[str] = None
    ) -> CompletionOutputs:
        """
        Generate completion outputs.

        Args:
            intake_type: Intake the answers belong to
            all_answers: Ordered answers (question/answer/reflection triples)
            prompt_version: Optional prompt version override

        Returns:
            CompletionOutputs

        Raises:
            UnknownIntake: Intake type not in catalog
            ValueError: If no answers are given
            GenerationFailure: If generation fails
        """
        intake = self.catalog.get(intake_type)
        if not all_answers:
            raise ValueError("Completion requires at least one answer")

        prompt = self.prompt_builder.build_completion_prompt(
            intake, all_answers, version=prompt_version
        )
        result = await self.generation.generate_structured(
            COMPLETION_SCHEMA, prompt.user, prompt.system, ModelTier.LARGE
        )

        logger.info(
            f"Completion generated for {intake_type} "
            f"({len(all_answers)}/{intake.total_steps} answers)"
        )
        return CompletionOutputs.from_json(result.data)

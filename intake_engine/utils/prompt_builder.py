"""
Prompt Builder - Reflection and completion prompts from versioned files

Responsibilities:
- Load prompt parts from data/prompts/<version>/<category>/<name>.md
- Substitute {{variable}} placeholders
- Render answers for prompts (option display text, other-text)
- Assemble the reflection prompt (question, answer, prior trail)
- Assemble the completion prompt (every question/answer/reflection triple)

NOT responsible for:
- Choosing a reflection strategy
- Calling the model

Design principles:
- Fail-fast: missing files or unresolved placeholders raise PromptBuildError
- Clinical intention is read here and nowhere else outside the catalog
- Deterministic output for the same inputs
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from intake_engine.contracts import (
    Answer,
    AnswerValue,
    IntakeDefinition,
    Pending,
    QuestionDefinition,
    SelectionValue,
    TextValue,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")
PART_SEPARATOR = "\n\n---\n\n"

REFLECTION_SYSTEM_PARTS = ("intake/reflection-system.md",)
REFLECTION_USER_PARTS = ("intake/reflection-user.md",)
COMPLETION_SYSTEM_PARTS = ("intake/completion-system.md",)
COMPLETION_USER_PARTS = ("intake/completion-user.md",)

FIRST_QUESTION_CONTEXT = "This is the first question - no prior context."
PENDING_REFLECTION = "(pending)"


class PromptBuildError(Exception):
    """Raised when a prompt cannot be built (missing part, unresolved variable)"""
    pass


@dataclass(frozen=True)
class BuiltPrompt:
    system: str
    user: str
    version: str
    parts: Tuple[str, ...]


def substitute_variables(template: str, variables: Dict[str, str]) -> str:
    """
    Replace {{name}} placeholders.

    Raises:
        PromptBuildError: If a placeholder has no value
    """
    missing = sorted({
        name for name in PLACEHOLDER_PATTERN.findall(template)
        if name not in variables
    })
    if missing:
        raise PromptBuildError(f"Unresolved prompt variables: {missing}")

    return PLACEHOLDER_PATTERN.sub(lambda m: variables[m.group(1)], template)


def format_answer_value(value: AnswerValue, question: Optional[QuestionDefinition] = None) -> str:
    """
    Render an answer for a prompt.

    Selection values are shown by option display text when the question is
    known, one per line. Free "other" text is appended to the other option.
    """
    if isinstance(value, TextValue):
        return value.text

    if isinstance(value, SelectionValue):
        lines = []
        for selected in value.values:
            option = question.option_for(selected) if question else None
            label = option.text if option else selected
            if option and option.is_other and value.other_text:
                label = f"{label}: {value.other_text.strip()}"
            lines.append(f"- {label}")
        return "\n".join(lines)

    raise TypeError(f"Unsupported answer value: {type(value).__name__}")


def format_reflection(answer: Answer) -> str:
    if isinstance(answer.reflection, Pending):
        return PENDING_REFLECTION
    return answer.reflection.text


class PromptBuilder:
    """Builds reflection and completion prompts from versioned prompt files"""

    def __init__(self, prompts_dir: str = "data/prompts", default_version: str = "v1"):
        """
        Args:
            prompts_dir: Root directory of versioned prompt files
            default_version: Version used when a call does not name one

        Raises:
            FileNotFoundError: If the default version directory doesn't exist
        """
        self.prompts_dir = Path(prompts_dir)
        self.default_version = default_version
        self._cache: Dict[Tuple[str, str], str] = {}

        if not (self.prompts_dir / default_version).is_dir():
            raise FileNotFoundError(
                f"Prompt version directory not found: {self.prompts_dir / default_version}"
            )

        logger.info(f"Prompt builder initialized ({self.prompts_dir}, default={default_version})")

    def load_part(self, part: str, version: Optional[str] = None) -> str:
        """
        Load one prompt part (cached).

        Raises:
            PromptBuildError: If the file doesn't exist
        """
        version = version or self.default_version
        key = (version, part)
        if key not in self._cache:
            path = self.prompts_dir / version / part
            if not path.is_file():
                raise PromptBuildError(f"Prompt part not found: {path}")
            self._cache[key] = path.read_text(encoding="utf-8").strip()
        return self._cache[key]

    def build(self, system_parts: Sequence[str], user_parts: Sequence[str],
              variables: Dict[str, str], version: Optional[str] = None) -> BuiltPrompt:
        version = version or self.default_version
        system = PART_SEPARATOR.join(self.load_part(p, version) for p in system_parts)
        user = PART_SEPARATOR.join(self.load_part(p, version) for p in user_parts)

        built = BuiltPrompt(
            system=substitute_variables(system, variables),
            user=substitute_variables(user, variables),
            version=version,
            parts=tuple(system_parts) + tuple(user_parts)
        )
        logger.debug(
            f"Built prompt {built.parts} (version={version}, "
            f"system={len(built.system)} chars, user={len(built.user)} chars)"
        )
        return built

    # ==================== CONTEXT FORMATTING ====================

    def _question_lookup(self, intake: IntakeDefinition) -> Dict[str, QuestionDefinition]:
        return {q.id: q for q in intake.questions}

    def format_prior_context(self, intake: IntakeDefinition, prior_answers: Sequence[Answer]) -> str:
        if not prior_answers:
            return FIRST_QUESTION_CONTEXT

        lookup = self._question_lookup(intake)
        blocks = []
        for i, answer in enumerate(prior_answers, 1):
            question = lookup.get(answer.question_id)
            blocks.append(
                f"Question {i}: {answer.question_prompt}\n"
                f"Answer: {format_answer_value(answer.value, question)}\n"
                f"Reflection: {format_reflection(answer)}"
            )
        return "\n\n".join(blocks)

    def format_all_answers(self, intake: IntakeDefinition, answers: Sequence[Answer]) -> str:
        lookup = self._question_lookup(intake)
        blocks = []
        for i, answer in enumerate(answers, 1):
            question = lookup.get(answer.question_id)
            block = (
                f"### Question {i}: {answer.question_prompt}\n\n"
                f"**Answer:** {format_answer_value(answer.value, question)}\n\n"
                f"**Reflection shown:** {format_reflection(answer)}"
            )
            if question and question.clinical_intention:
                block += f"\n\n**Question intention (internal):** {question.clinical_intention}"
            blocks.append(block)
        return "\n\n---\n\n".join(blocks)

    # ==================== PUBLIC BUILDERS ====================

    def build_reflection_prompt(
        self,
        intake: IntakeDefinition,
        question: QuestionDefinition,
        answer: AnswerValue,
        prior_answers: Sequence[Answer],
        step_index: int,
        version: Optional[str] = None
    ) -> BuiltPrompt:
        variables = {
            "questionNumber": str(step_index + 1),
            "totalQuestions": str(intake.total_steps),
            "questionPrompt": question.prompt,
            "questionIntention": question.clinical_intention or "Not specified.",
            "userAnswer": format_answer_value(answer, question),
            "priorContext": self.format_prior_context(intake, prior_answers),
        }
        return self.build(REFLECTION_SYSTEM_PARTS, REFLECTION_USER_PARTS, variables, version)

    def build_completion_prompt(
        self,
        intake: IntakeDefinition,
        all_answers: Sequence[Answer],
        version: Optional[str] = None
    ) -> BuiltPrompt:
        variables = {
            "intakeName": intake.name,
            "answerCount": str(len(all_answers)),
            "totalQuestions": str(intake.total_steps),
            "allAnswers": self.format_all_answers(intake, all_answers),
        }
        return self.build(COMPLETION_SYSTEM_PARTS, COMPLETION_USER_PARTS, variables, version)

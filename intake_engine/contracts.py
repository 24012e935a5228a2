"""
Semantic contracts for the intake engine.

Immutable data structures passed between the catalog, the step processor,
the completion generator and the session store. These define shape and
semantics; validation lives in the modules that own the rules.

Design principles:
- Frozen dataclasses (immutable after creation)
- Tagged variants instead of untyped unions (TextValue | SelectionValue,
  Pending | Resolved)
- Tuples, not lists, so nested values stay immutable
- Wire (JSON) conversion lives next to each type

Contents:
- QuestionKind, QuestionOption, ReflectionTemplate
- QuestionDefinition: full catalog entry (includes internal-only fields)
- ClientQuestion: the only question shape allowed to leave the engine
- IntakeDefinition
- TextValue / SelectionValue (AnswerValue)
- Pending / Resolved (Reflection)
- Answer, CompletionOutputs
- StepRequest, StepMetadata, StepResponse
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class QuestionKind(str, Enum):
    """Input kind of a question"""
    TEXT = "text"
    MULTISELECT = "multiselect"
    SINGLESELECT = "singleselect"

    @property
    def is_selection(self) -> bool:
        return self is not QuestionKind.TEXT


@dataclass(frozen=True)
class QuestionOption:
    """
    One selectable option.

    Attributes:
        text: Display text shown to the user
        value: Stable value submitted as the answer
        is_other: Option that accepts free text ("Something else")
    """
    text: str
    value: str
    is_other: bool = False

    def to_json(self) -> dict:
        return {'text': self.text, 'value': self.value, 'is_other': self.is_other}


@dataclass(frozen=True)
class ReflectionTemplate:
    """Pre-authored acknowledgment for one exact selection of option values"""
    values: Tuple[str, ...]
    text: str


@dataclass(frozen=True)
class ClientQuestion:
    """
    Question as seen by callers outside the engine.

    Built only by QuestionDefinition.to_client(). Carries no internal
    annotations (clinical intention, reflection routing).
    """
    id: str
    prompt: str
    kind: QuestionKind
    options: Tuple[QuestionOption, ...] = ()
    examples: Tuple[str, ...] = ()

    def to_json(self) -> dict:
        return {
            'id': self.id,
            'prompt': self.prompt,
            'kind': self.kind.value,
            'options': [option.to_json() for option in self.options],
            'examples': list(self.examples),
        }


@dataclass(frozen=True)
class QuestionDefinition:
    """
    Immutable question definition from the catalog.

    Identified by `id`, which is stable and never reused for a different
    semantic question.

    Attributes:
        id: Question identifier (e.g. 'q2_areas_affected')
        prompt: Question text shown to the user
        kind: text | multiselect | singleselect
        options: Ordered options (selection kinds only)
        examples: Example answers shown as hints
        clinical_intention: INTERNAL. Purpose of the question, visible to
            prompt builders only
        skip_reflection: INTERNAL. Canned acknowledgment for low-signal
            questions; when set, no generation call is made
        reflection_templates: INTERNAL. Exact-selection acknowledgments

    Note:
        Never serialize a QuestionDefinition for a caller. Use to_client().
    """
    id: str
    prompt: str
    kind: QuestionKind
    options: Tuple[QuestionOption, ...] = ()
    examples: Tuple[str, ...] = ()
    clinical_intention: Optional[str] = None
    skip_reflection: Optional[str] = None
    reflection_templates: Tuple[ReflectionTemplate, ...] = ()

    @property
    def is_low_signal(self) -> bool:
        return self.skip_reflection is not None

    def option_values(self) -> Tuple[str, ...]:
        return tuple(option.value for option in self.options)

    def option_for(self, value: str) -> Optional[QuestionOption]:
        for option in self.options:
            if option.value == value:
                return option
        return None

    def to_client(self) -> ClientQuestion:
        """Strip internal fields"""
        return ClientQuestion(
            id=self.id,
            prompt=self.prompt,
            kind=self.kind,
            options=self.options,
            examples=self.examples
        )


@dataclass(frozen=True)
class IntakeDefinition:
    """
    One complete questionnaire.

    Attributes:
        id: Intake type (e.g. 'therapy_readiness')
        version: Definition version string
        name: Human-readable name
        description: Short purpose statement
        questions: Ordered questions
        early_completion_index: Step after which a speculative completion
            may start. None disables early start.
    """
    id: str
    version: str
    name: str
    description: str
    questions: Tuple[QuestionDefinition, ...]
    early_completion_index: Optional[int] = None

    @property
    def total_steps(self) -> int:
        return len(self.questions)


# =============================================================================
# Answer values
# =============================================================================

@dataclass(frozen=True)
class TextValue:
    """Free-text answer"""
    text: str

    def to_json(self) -> str:
        return self.text


@dataclass(frozen=True)
class SelectionValue:
    """
    Selection answer: ordered set of option values.

    other_text carries the free text typed next to an "other" option.
    """
    values: Tuple[str, ...]
    other_text: Optional[str] = None

    def to_json(self) -> Union[List[str], Dict[str, Any]]:
        if self.other_text is None:
            return list(self.values)
        return {'values': list(self.values), 'other_text': self.other_text}


AnswerValue = Union[TextValue, SelectionValue]


def answer_value_from_json(data: Any) -> AnswerValue:
    """
    Parse a wire answer value.

    Accepted shapes:
        "some text"                                -> TextValue
        ["work", "stress"]                         -> SelectionValue
        {"values": [...], "other_text": "..."}     -> SelectionValue

    Raises:
        ValueError: If the shape is not recognized
    """
    if isinstance(data, str):
        return TextValue(text=data)

    if isinstance(data, list):
        if not all(isinstance(v, str) for v in data):
            raise ValueError("selection values must be strings")
        return SelectionValue(values=tuple(data))

    if isinstance(data, dict) and 'values' in data:
        values = data['values']
        other_text = data.get('other_text')
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ValueError("selection values must be a list of strings")
        if other_text is not None and not isinstance(other_text, str):
            raise ValueError("other_text must be a string")
        return SelectionValue(values=tuple(values), other_text=other_text)

    raise ValueError(f"Unrecognized answer value: {type(data).__name__}")


# =============================================================================
# Reflection (two-phase value)
# =============================================================================

@dataclass(frozen=True)
class Pending:
    """Reflection not generated yet"""

    def to_json(self) -> None:
        return None


@dataclass(frozen=True)
class Resolved:
    """Reflection text; may legitimately be the empty string"""
    text: str

    def to_json(self) -> str:
        return self.text


Reflection = Union[Pending, Resolved]

PENDING = Pending()


def reflection_from_json(data: Optional[str]) -> Reflection:
    if data is None:
        return PENDING
    if not isinstance(data, str):
        raise ValueError("reflection must be a string or null")
    return Resolved(text=data)


# =============================================================================
# Answer record
# =============================================================================

@dataclass(frozen=True)
class Answer:
    """
    One submitted answer, owned by the session store.

    Attributes:
        question_id: Identity key of the answered question
        question_prompt: Question text at the time of answering
        value: TextValue | SelectionValue
        reflection: Pending until the step response arrives
    """
    question_id: str
    question_prompt: str
    value: AnswerValue
    reflection: Reflection = PENDING

    @property
    def is_reflected(self) -> bool:
        return isinstance(self.reflection, Resolved)

    def with_reflection(self, text: str) -> "Answer":
        return replace(self, reflection=Resolved(text=text))

    def to_json(self) -> dict:
        return {
            'question_id': self.question_id,
            'question_prompt': self.question_prompt,
            'answer': self.value.to_json(),
            'reflection': self.reflection.to_json(),
        }

    @staticmethod
    def from_json(data: dict) -> "Answer":
        """
        Raises:
            ValueError: If required keys are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("answer must be an object")
        missing = {'question_id', 'question_prompt', 'answer'} - set(data.keys())
        if missing:
            raise ValueError(f"answer missing required keys: {sorted(missing)}")
        return Answer(
            question_id=str(data['question_id']),
            question_prompt=str(data['question_prompt']),
            value=answer_value_from_json(data['answer']),
            reflection=reflection_from_json(data.get('reflection'))
        )


@dataclass(frozen=True)
class CompletionOutputs:
    """
    The three end-of-intake artifacts.

    Attributes:
        personalized_brief: How therapy might help, no guarantees
        first_session_guide: How to make the most of a first session
        experiments: 2-3 optional, low-intensity pre-therapy experiments
    """
    personalized_brief: str
    first_session_guide: str
    experiments: Tuple[str, ...]

    def to_json(self) -> dict:
        return {
            'personalized_brief': self.personalized_brief,
            'first_session_guide': self.first_session_guide,
            'experiments': list(self.experiments),
        }

    @staticmethod
    def from_json(data: dict) -> "CompletionOutputs":
        return CompletionOutputs(
            personalized_brief=data['personalized_brief'],
            first_session_guide=data['first_session_guide'],
            experiments=tuple(data['experiments'])
        )


# =============================================================================
# Step messages
# =============================================================================

@dataclass(frozen=True)
class StepRequest:
    """Transient request to the step processor"""
    intake_type: str
    step_index: int
    prior_answers: Tuple[Answer, ...]
    current_answer: AnswerValue
    prompt_version: Optional[str] = None

    def to_json(self) -> dict:
        data = {
            'intake_type': self.intake_type,
            'step_index': self.step_index,
            'prior_answers': [a.to_json() for a in self.prior_answers],
            'current_answer': self.current_answer.to_json(),
        }
        if self.prompt_version is not None:
            data['prompt_version'] = self.prompt_version
        return data

    @staticmethod
    def from_json(data: dict) -> "StepRequest":
        """
        Raises:
            ValueError: If the body is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("request body must be an object")

        missing = {'intake_type', 'step_index', 'prior_answers', 'current_answer'} - set(data.keys())
        if missing:
            raise ValueError(f"request missing required keys: {sorted(missing)}")

        step_index = data['step_index']
        if isinstance(step_index, bool) or not isinstance(step_index, int) or step_index < 0:
            raise ValueError("step_index must be a non-negative integer")

        prior = data['prior_answers']
        if not isinstance(prior, list):
            raise ValueError("prior_answers must be a list")

        prompt_version = data.get('prompt_version')
        if prompt_version is not None and not isinstance(prompt_version, str):
            raise ValueError("prompt_version must be a string")

        return StepRequest(
            intake_type=str(data['intake_type']),
            step_index=step_index,
            prior_answers=tuple(Answer.from_json(a) for a in prior),
            current_answer=answer_value_from_json(data['current_answer']),
            prompt_version=prompt_version
        )


@dataclass(frozen=True)
class StepMetadata:
    current_step: int
    total_steps: int
    intake_type: str
    prompt_version: Optional[str] = None
    reflection_strategy: Optional[str] = None

    def to_json(self) -> dict:
        return {
            'current_step': self.current_step,
            'total_steps': self.total_steps,
            'intake_type': self.intake_type,
            'prompt_version': self.prompt_version,
            'reflection_strategy': self.reflection_strategy,
        }


@dataclass(frozen=True)
class StepResponse:
    """
    Transient response from the step processor.

    next_question is a ClientQuestion, so internal annotations cannot
    leak through a response.
    """
    reflection: str
    next_question: Optional[ClientQuestion]
    is_complete: bool
    completion_outputs: Optional[CompletionOutputs]
    metadata: StepMetadata

    def to_json(self) -> dict:
        return {
            'reflection': self.reflection,
            'next_question': self.next_question.to_json() if self.next_question else None,
            'is_complete': self.is_complete,
            'completion_outputs': (
                self.completion_outputs.to_json() if self.completion_outputs else None
            ),
            'metadata': self.metadata.to_json(),
        }

"""
Definition Catalog - Read-only registry of intake definitions

Responsibilities:
- Load versioned intake definitions from data/intakes/*.json
- Validate definition structure (fail fast at construction)
- Resolve intake types and step indices to question definitions
- Provide client-safe views of questions (internal fields stripped)

Design principles:
- Loaded once, immutable afterwards (frozen dataclasses, tuples)
- Lookups have no side effects
- Not found / out of range are caller errors (UnknownIntake, InvalidStep)

CRITICAL: Internal annotations
- clinical_intention, skip_reflection and reflection_templates are INTERNAL
- Anything leaving the engine goes through QuestionDefinition.to_client()
- Only the strategy selector and prompt builders read the full definition
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from intake_engine.contracts import (
    ClientQuestion,
    IntakeDefinition,
    QuestionDefinition,
    QuestionKind,
    QuestionOption,
    ReflectionTemplate,
)
from intake_engine.errors import InvalidStep, UnknownIntake

logger = logging.getLogger(__name__)

REQUIRED_INTAKE_KEYS = ("id", "version", "name", "description", "questions")
REQUIRED_QUESTION_KEYS = ("id", "prompt", "kind")

# Sentinel: key absent from the file, so the default index applies
_DEFAULT_INDEX = object()


def default_early_completion_index(total_steps: int) -> Optional[int]:
    """Second-to-last question, or None when the intake is too short"""
    if total_steps < 2:
        return None
    return total_steps - 2


# =============================================================================
# Parsing and validation
# =============================================================================

def _require(data: Dict[str, Any], keys: Iterable[str], where: str) -> None:
    missing = [key for key in keys if key not in data]
    if missing:
        raise ValueError(f"{where}: missing required keys {missing}")


def _non_empty_string(value: Any, where: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where}: must be a non-empty string")
    return value


def _parse_options(raw: Any, where: str) -> Tuple[QuestionOption, ...]:
    if not isinstance(raw, list):
        raise ValueError(f"{where}: 'options' must be a list")

    options = []
    seen = set()
    for i, item in enumerate(raw):
        item_where = f"{where} option {i}"
        if not isinstance(item, dict):
            raise ValueError(f"{item_where}: must be an object")
        _require(item, ("text", "value"), item_where)
        value = _non_empty_string(item["value"], f"{item_where} value")
        if value in seen:
            raise ValueError(f"{where}: duplicate option value '{value}'")
        seen.add(value)
        options.append(QuestionOption(
            text=_non_empty_string(item["text"], f"{item_where} text"),
            value=value,
            is_other=bool(item.get("is_other", False))
        ))
    return tuple(options)


def _parse_templates(raw: Any, kind: QuestionKind, option_values: Tuple[str, ...],
                     where: str) -> Tuple[ReflectionTemplate, ...]:
    if not isinstance(raw, list):
        raise ValueError(f"{where}: 'reflection_templates' must be a list")
    if raw and not kind.is_selection:
        raise ValueError(f"{where}: reflection templates are only allowed on selection questions")

    templates = []
    seen = set()
    for i, item in enumerate(raw):
        item_where = f"{where} template {i}"
        if not isinstance(item, dict):
            raise ValueError(f"{item_where}: must be an object")
        _require(item, ("values", "text"), item_where)

        values = item["values"]
        if not isinstance(values, list) or not values:
            raise ValueError(f"{item_where}: 'values' must be a non-empty list")
        unknown = [v for v in values if v not in option_values]
        if unknown:
            raise ValueError(f"{item_where}: unknown option values {unknown}")
        if len(set(values)) != len(values):
            raise ValueError(f"{item_where}: duplicate values")
        if kind == QuestionKind.SINGLESELECT and len(values) != 1:
            raise ValueError(f"{item_where}: singleselect templates take exactly one value")

        key = frozenset(values)
        if key in seen:
            raise ValueError(f"{item_where}: duplicate template for {sorted(key)}")
        seen.add(key)

        templates.append(ReflectionTemplate(
            values=tuple(values),
            text=_non_empty_string(item["text"], f"{item_where} text")
        ))
    return tuple(templates)


def parse_question(data: Any, where: str) -> QuestionDefinition:
    """
    Build a QuestionDefinition from its JSON form.

    Raises:
        ValueError: If the question is malformed
    """
    if not isinstance(data, dict):
        raise ValueError(f"{where}: question must be an object")
    _require(data, REQUIRED_QUESTION_KEYS, where)

    question_id = _non_empty_string(data["id"], f"{where} id")
    where = f"{where} ({question_id})"

    try:
        kind = QuestionKind(data["kind"])
    except ValueError:
        raise ValueError(
            f"{where}: unknown kind '{data['kind']}' "
            f"(expected one of {[k.value for k in QuestionKind]})"
        )

    options = _parse_options(data.get("options", []), where)
    if kind.is_selection and not options:
        raise ValueError(f"{where}: selection questions need at least one option")
    if not kind.is_selection and options:
        raise ValueError(f"{where}: text questions take no options")

    examples = data.get("examples", [])
    if not isinstance(examples, list) or not all(isinstance(e, str) for e in examples):
        raise ValueError(f"{where}: 'examples' must be a list of strings")

    clinical_intention = data.get("clinical_intention")
    if clinical_intention is not None:
        _non_empty_string(clinical_intention, f"{where} clinical_intention")

    skip_reflection = data.get("skip_reflection")
    if skip_reflection is not None and not isinstance(skip_reflection, str):
        raise ValueError(f"{where}: 'skip_reflection' must be a string")

    option_values = tuple(option.value for option in options)
    templates = _parse_templates(data.get("reflection_templates", []), kind, option_values, where)

    return QuestionDefinition(
        id=question_id,
        prompt=_non_empty_string(data["prompt"], f"{where} prompt"),
        kind=kind,
        options=options,
        examples=tuple(examples),
        clinical_intention=clinical_intention,
        skip_reflection=skip_reflection,
        reflection_templates=templates
    )


def parse_intake(data: Any, source: str = "<memory>") -> IntakeDefinition:
    """
    Build an IntakeDefinition from its JSON form.

    Args:
        data: Parsed JSON object
        source: File name (or label) used in error messages

    Raises:
        ValueError: If the definition is malformed
    """
    if not isinstance(data, dict):
        raise ValueError(f"{source}: intake definition must be an object")
    _require(data, REQUIRED_INTAKE_KEYS, source)

    intake_id = _non_empty_string(data["id"], f"{source} id")
    where = f"{source} ({intake_id})"

    raw_questions = data["questions"]
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValueError(f"{where}: 'questions' must be a non-empty list")

    questions = tuple(
        parse_question(q, f"{where} question {i}") for i, q in enumerate(raw_questions)
    )

    seen = set()
    for question in questions:
        if question.id in seen:
            raise ValueError(f"{where}: duplicate question id '{question.id}'")
        seen.add(question.id)

    total_steps = len(questions)
    raw_index = data.get("early_completion_index", _DEFAULT_INDEX)
    if raw_index is _DEFAULT_INDEX:
        early_index = default_early_completion_index(total_steps)
    elif raw_index is None:
        early_index = None
    else:
        if isinstance(raw_index, bool) or not isinstance(raw_index, int):
            raise ValueError(f"{where}: 'early_completion_index' must be an integer or null")
        if not 0 <= raw_index <= total_steps - 2:
            raise ValueError(
                f"{where}: 'early_completion_index' {raw_index} out of range "
                f"[0, {total_steps - 2}]"
            )
        early_index = raw_index

    return IntakeDefinition(
        id=intake_id,
        version=str(data["version"]),
        name=_non_empty_string(data["name"], f"{where} name"),
        description=str(data["description"]),
        questions=questions,
        early_completion_index=early_index
    )


# =============================================================================
# Catalog
# =============================================================================

class DefinitionCatalog:
    """
    Immutable registry of intake definitions.

    All lookups are read-only. Internal question annotations are only
    reachable through get() and question_at(), which the engine's own
    modules use; callers outside the engine receive ClientQuestion views.
    """

    def __init__(self, definitions_dir: Optional[str] = "data/intakes",
                 definitions: Optional[List[IntakeDefinition]] = None):
        """
        Load every *.json definition in a directory.

        Args:
            definitions_dir: Directory of intake definition files
            definitions: Already-parsed definitions (used by from_definitions)

        Raises:
            FileNotFoundError: If the directory doesn't exist
            ValueError: If any definition is invalid or intake ids collide
        """
        self._intakes: Dict[str, IntakeDefinition] = {}

        if definitions is None:
            definitions = self._load_directory(definitions_dir)

        for intake in definitions:
            if intake.id in self._intakes:
                raise ValueError(f"Duplicate intake id '{intake.id}'")
            self._intakes[intake.id] = intake

        logger.info(
            f"Definition catalog initialized with {len(self._intakes)} intake(s): "
            f"{sorted(self._intakes)}"
        )

    @classmethod
    def from_definitions(cls, definitions: List[Dict[str, Any]]) -> "DefinitionCatalog":
        """
        Build a catalog from in-memory JSON objects (same validation as files).

        Raises:
            ValueError: If any definition is invalid
        """
        parsed = [parse_intake(d, f"definition {i}") for i, d in enumerate(definitions)]
        return cls(definitions_dir=None, definitions=parsed)

    @staticmethod
    def _load_directory(definitions_dir: str) -> List[IntakeDefinition]:
        directory = Path(definitions_dir)
        if not directory.is_dir():
            raise FileNotFoundError(f"Definitions directory not found: {definitions_dir}")

        definitions = []
        for path in sorted(directory.glob("*.json")):
            with open(path, "r", encoding="utf-8") as f:
                try:
                    data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ValueError(f"{path.name}: invalid JSON: {e}") from e
            definitions.append(parse_intake(data, path.name))
            logger.debug(f"Loaded intake definition {path.name}")

        return definitions

    # ==================== CORE LOOKUPS ====================

    def get(self, intake_type: str) -> IntakeDefinition:
        """
        Raises:
            UnknownIntake: If the intake type is not registered
        """
        intake = self._intakes.get(intake_type)
        if intake is None:
            raise UnknownIntake(intake_type)
        return intake

    def question_at(self, intake_type: str, index: int) -> QuestionDefinition:
        """
        Resolve a step index to its question.

        Raises:
            UnknownIntake: If the intake type is not registered
            InvalidStep: If index is outside [0, total_steps)
        """
        intake = self.get(intake_type)
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < intake.total_steps:
            raise InvalidStep(
                intake_type, index,
                f"expected 0..{intake.total_steps - 1}"
            )
        return intake.questions[index]

    def total_steps(self, intake_type: str) -> int:
        return self.get(intake_type).total_steps

    def index_of(self, intake_type: str, question_id: str) -> int:
        """
        Position of a question id within its intake.

        Raises:
            InvalidStep: If no question has this id
        """
        for i, question in enumerate(self.get(intake_type).questions):
            if question.id == question_id:
                return i
        raise InvalidStep(intake_type, None, f"unknown question id '{question_id}'")

    # ==================== CLIENT VIEWS ====================

    def intake_types(self) -> List[str]:
        return sorted(self._intakes)

    def metadata(self, intake_type: str) -> Dict[str, Any]:
        intake = self.get(intake_type)
        return {
            "id": intake.id,
            "version": intake.version,
            "name": intake.name,
            "description": intake.description,
            "total_steps": intake.total_steps,
        }

    def first_question(self, intake_type: str) -> ClientQuestion:
        return self.question_at(intake_type, 0).to_client()

    def client_questions(self, intake_type: str) -> List[ClientQuestion]:
        return [q.to_client() for q in self.get(intake_type).questions]

    def early_completion_index(self, intake_type: str) -> Optional[int]:
        return self.get(intake_type).early_completion_index

"""
Shared mock collaborators for intake engine tests

- FakeGeneration: scripted generation capability (gates, failures, call log)
- Definition builders for small in-memory intakes
- build_engine(): catalog + step processor + completion generator wired to a fake
"""

import os
import sys
from dataclasses import dataclass

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intake_engine.core.completion_generator import CompletionGenerator
from intake_engine.core.definition_catalog import DefinitionCatalog
from intake_engine.core.reflection_strategy import ReflectionStrategySelector
from intake_engine.core.step_processor import StepProcessor
from intake_engine.errors import GenerationFailure
from intake_engine.utils.generation import (
    COMPLETION_SCHEMA,
    REFLECTION_SCHEMA,
    GenerationCapability,
    GenerationResult,
)
from intake_engine.utils.prompt_builder import PromptBuilder

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
PROMPTS_DIR = os.path.join(ROOT_DIR, "data", "prompts")
INTAKES_DIR = os.path.join(ROOT_DIR, "data", "intakes")

REFLECTION = REFLECTION_SCHEMA.name
COMPLETION = COMPLETION_SCHEMA.name

# Marker for "leave early_completion_index out of the definition"
DEFAULT = object()


@dataclass
class Call:
    schema_name: str
    prompt: str
    system: str
    tier: object


class FakeGeneration(GenerationCapability):
    """
    Scripted generation capability.

    Calls are numbered per schema from 0. A gated call waits on its
    asyncio.Event before answering; a failing call raises GenerationFailure.
    Events must be created inside the running loop.
    """

    def __init__(self):
        self.calls = []
        self._gates = {}
        self._failures = set()
        self._results = {}

    def gate(self, schema_name, index, event):
        self._gates[(schema_name, index)] = event

    def fail(self, schema_name, index):
        self._failures.add((schema_name, index))

    def set_result(self, schema_name, index, data):
        self._results[(schema_name, index)] = data

    def count(self, schema_name):
        return len([c for c in self.calls if c.schema_name == schema_name])

    def calls_for(self, schema_name):
        return [c for c in self.calls if c.schema_name == schema_name]

    async def generate_structured(self, schema, prompt, system, tier):
        index = self.count(schema.name)
        self.calls.append(Call(schema.name, prompt, system, tier))

        gate = self._gates.get((schema.name, index))
        if gate is not None:
            await gate.wait()

        if (schema.name, index) in self._failures:
            raise GenerationFailure(f"scripted failure {schema.name}#{index}",
                                    tier=str(tier), schema_name=schema.name)

        if (schema.name, index) in self._results:
            return GenerationResult(data=self._results[(schema.name, index)])

        if schema.name == REFLECTION:
            data = {"reflection": f"Generated reflection {index}"}
        else:
            data = {
                "personalized_brief": f"brief {index}",
                "first_session_guide": f"guide {index}",
                "experiments": [f"experiment {index}a", f"experiment {index}b"],
            }
        return GenerationResult(data=data, diagnostics={"fake": True})


# ========================
# Definitions
# ========================

def text_question(qid, prompt=None, intention="Test intention."):
    return {
        "id": qid,
        "prompt": prompt or f"Prompt for {qid}?",
        "kind": "text",
        "examples": [f"example for {qid}"],
        "clinical_intention": intention,
    }


def areas_question(qid="q2_areas"):
    return {
        "id": qid,
        "prompt": "Which areas feel most affected?",
        "kind": "multiselect",
        "options": [
            {"text": "Work or career", "value": "work"},
            {"text": "Stress or overwhelm", "value": "stress"},
            {"text": "Relationships", "value": "relationships"},
            {"text": "Something else", "value": "other", "is_other": True},
        ],
        "clinical_intention": "Identifies domains of impact.",
        "reflection_templates": [
            {"values": ["work", "stress"], "text": "Work and stress often go together."},
        ],
    }


def readiness_question(qid="q3_readiness"):
    return {
        "id": qid,
        "prompt": "Where are you right now?",
        "kind": "singleselect",
        "options": [
            {"text": "Just exploring", "value": "just_exploring"},
            {"text": "Ready to try", "value": "ready"},
        ],
        "clinical_intention": "Allows a 'no' without shame.",
        "skip_reflection": "Thank you for sharing where you're at.",
    }


def three_question_definition(early_completion_index=None, intake_id="three_step"):
    """Text, templated multiselect, skip-eligible singleselect"""
    definition = {
        "id": intake_id,
        "version": "1.0.0",
        "name": "Three Step Intake",
        "description": "Small intake for tests.",
        "questions": [
            text_question("q1_text"),
            areas_question(),
            readiness_question(),
        ],
    }
    if early_completion_index is not DEFAULT:
        definition["early_completion_index"] = early_completion_index
    return definition


def four_question_definition(early_completion_index=DEFAULT, intake_id="four_step"):
    """Default early completion index is 2 (second-to-last)"""
    definition = {
        "id": intake_id,
        "version": "1.0.0",
        "name": "Four Step Intake",
        "description": "Intake with an early completion step.",
        "questions": [
            text_question("q1_text"),
            areas_question(),
            text_question("q3_text"),
            readiness_question("q4_readiness"),
        ],
    }
    if early_completion_index is not DEFAULT:
        definition["early_completion_index"] = early_completion_index
    return definition


def build_engine(definitions, generation=None):
    """
    Returns:
        tuple: (catalog, step_processor, completion_generator, generation)
    """
    generation = generation or FakeGeneration()
    catalog = DefinitionCatalog.from_definitions(definitions)
    prompt_builder = PromptBuilder(PROMPTS_DIR)
    completion_generator = CompletionGenerator(catalog, generation, prompt_builder)
    step_processor = StepProcessor(
        catalog,
        ReflectionStrategySelector(generation, prompt_builder),
        completion_generator
    )
    return catalog, step_processor, completion_generator, generation

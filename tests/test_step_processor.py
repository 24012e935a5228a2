"""
Unit tests for Step Processor

Tests validation, strategy routing, advancing and completing
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intake_engine.contracts import Answer, SelectionValue, StepRequest, TextValue
from intake_engine.core.step_processor import StepProcessor
from intake_engine.errors import GenerationFailure, InvalidAnswer, InvalidStep, UnknownIntake
from intake_engine.utils.generation import ModelTier

from fakes import COMPLETION, REFLECTION, build_engine, three_question_definition


@pytest.fixture
def engine():
    return build_engine([three_question_definition()])


def run(engine, step_index, value, prior=(), intake_type="three_step", prompt_version=None):
    _, processor, _, _ = engine
    request = StepRequest(
        intake_type=intake_type,
        step_index=step_index,
        prior_answers=tuple(prior),
        current_answer=value,
        prompt_version=prompt_version
    )
    return asyncio.run(processor.process(request))


def answer(qid, prompt, value, reflection="ok"):
    return Answer(question_id=qid, question_prompt=prompt, value=value).with_reflection(reflection)


class TestAdvancing:

    def test_first_step_returns_next_question(self, engine):
        response = run(engine, 0, TextValue("I feel stuck."))

        assert response.reflection == "Generated reflection 0"
        assert response.is_complete is False
        assert response.completion_outputs is None
        assert response.next_question.id == "q2_areas"
        assert response.metadata.current_step == 0
        assert response.metadata.total_steps == 3
        assert response.metadata.intake_type == "three_step"
        assert response.metadata.reflection_strategy == "generate"

    def test_next_question_is_client_view(self, engine):
        response = run(engine, 0, TextValue("I feel stuck."))
        data = response.to_json()['next_question']

        assert 'clinical_intention' not in data
        assert 'reflection_templates' not in data
        assert [o['value'] for o in data['options']] == ["work", "stress", "relationships", "other"]

    def test_template_step_makes_no_calls(self, engine):
        _, _, _, generation = engine
        response = run(engine, 1, SelectionValue(("work", "stress")))

        assert response.reflection == "Work and stress often go together."
        assert response.metadata.reflection_strategy == "template"
        assert generation.calls == []

    def test_prompt_version_echoed(self, engine):
        response = run(engine, 0, TextValue("x"), prompt_version="v1")
        assert response.metadata.prompt_version == "v1"


class TestCompleting:

    def test_last_step_generates_completion(self, engine):
        _, _, _, generation = engine
        prior = [
            answer("q1_text", "Prompt for q1_text?", TextValue("I feel stuck.")),
            answer("q2_areas", "Which areas feel most affected?", SelectionValue(("work",))),
        ]
        response = run(engine, 2, SelectionValue(("ready",)), prior)

        assert response.is_complete is True
        assert response.next_question is None
        assert response.reflection == "Thank you for sharing where you're at."
        assert response.completion_outputs.personalized_brief == "brief 0"
        assert list(response.completion_outputs.experiments) == ["experiment 0a", "experiment 0b"]

        assert generation.count(REFLECTION) == 0
        completion_call = generation.calls_for(COMPLETION)[0]
        assert completion_call.tier == ModelTier.LARGE
        # Every triple, including this step's answer and reflection
        assert "I feel stuck." in completion_call.prompt
        assert "Ready to try" in completion_call.prompt
        assert "Thank you for sharing where you're at." in completion_call.prompt

    def test_completion_failure_propagates(self, engine):
        _, _, _, generation = engine
        generation.fail(COMPLETION, 0)

        with pytest.raises(GenerationFailure):
            run(engine, 2, SelectionValue(("ready",)))


class TestValidating:

    def test_unknown_intake(self, engine):
        with pytest.raises(UnknownIntake):
            run(engine, 0, TextValue("x"), intake_type="missing")

    def test_out_of_range_step(self, engine):
        _, _, _, generation = engine
        with pytest.raises(InvalidStep):
            run(engine, 3, TextValue("x"))
        assert generation.calls == []

    @pytest.mark.parametrize("step_index,value", [
        (0, TextValue("   ")),
        (0, SelectionValue(("work",))),
        (1, TextValue("work")),
        (1, SelectionValue(())),
        (1, SelectionValue(("work", "work"))),
        (1, SelectionValue(("hobbies",))),
        (1, SelectionValue(("work",), other_text="something")),
        (2, SelectionValue(("ready", "just_exploring"))),
    ])
    def test_invalid_answers(self, engine, step_index, value):
        _, _, _, generation = engine
        with pytest.raises(InvalidAnswer):
            run(engine, step_index, value)
        assert generation.calls == []

    def test_other_text_with_other_option(self, engine):
        response = run(engine, 1, SelectionValue(("other",), other_text="my commute"))
        assert response.metadata.reflection_strategy == "generate"


def test_rejects_invalid_modules(engine):
    catalog, _, completion_generator, _ = engine
    with pytest.raises(TypeError):
        StepProcessor(catalog, object(), completion_generator)
    with pytest.raises(TypeError):
        StepProcessor(object(), object(), completion_generator)

"""
Unit tests for Prompt Builder

Tests versioned loading, substitution and answer rendering
"""

import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intake_engine.contracts import Answer, SelectionValue, TextValue
from intake_engine.core.definition_catalog import DefinitionCatalog
from intake_engine.utils.prompt_builder import (
    FIRST_QUESTION_CONTEXT,
    PromptBuildError,
    PromptBuilder,
    format_answer_value,
    substitute_variables,
)

from fakes import PROMPTS_DIR, three_question_definition


@pytest.fixture
def intake():
    return DefinitionCatalog.from_definitions([three_question_definition()]).get("three_step")


@pytest.fixture
def builder():
    return PromptBuilder(PROMPTS_DIR)


def test_substitute_variables():
    assert substitute_variables("Hi {{name}}, {{ name }}!", {"name": "Sam"}) == "Hi Sam, Sam!"


def test_unresolved_variable_raises():
    with pytest.raises(PromptBuildError) as exc_info:
        substitute_variables("{{known}} {{missing}}", {"known": "x"})
    assert "missing" in str(exc_info.value)


def test_substituted_values_are_not_rescanned():
    assert substitute_variables("{{a}}", {"a": "{{b}}"}) == "{{b}}"


def test_format_selection_uses_display_text(intake):
    question = intake.questions[1]
    value = SelectionValue(("work", "other"), other_text=" my commute ")

    assert format_answer_value(value, question) == "- Work or career\n- Something else: my commute"


def test_format_selection_without_question():
    assert format_answer_value(SelectionValue(("work",))) == "- work"


def test_format_text():
    assert format_answer_value(TextValue("I feel stuck.")) == "I feel stuck."


def test_reflection_prompt_first_question(builder, intake):
    prompt = builder.build_reflection_prompt(
        intake, intake.questions[0], TextValue("I feel stuck."), (), 0
    )

    assert prompt.version == "v1"
    assert "question 1 of 3" in prompt.user
    assert FIRST_QUESTION_CONTEXT in prompt.user
    assert "Test intention." in prompt.user
    assert "{{" not in prompt.user and "{{" not in prompt.system


def test_reflection_prompt_prior_context(builder, intake):
    prior = (
        Answer("q1_text", "Prompt for q1_text?", TextValue("I feel stuck.")).with_reflection("Thanks."),
    )
    prompt = builder.build_reflection_prompt(
        intake, intake.questions[1], SelectionValue(("work",)), prior, 1
    )

    assert "Question 1: Prompt for q1_text?" in prompt.user
    assert "Reflection: Thanks." in prompt.user
    assert "- Work or career" in prompt.user


def test_completion_prompt_lists_every_answer(builder, intake):
    answers = (
        Answer("q1_text", "Prompt for q1_text?", TextValue("I feel stuck.")).with_reflection("Thanks."),
        Answer("q2_areas", "Which areas feel most affected?", SelectionValue(("stress",))),
    )
    prompt = builder.build_completion_prompt(intake, answers)

    assert "Three Step Intake (2 of 3 questions answered)" in prompt.user
    assert "### Question 1: Prompt for q1_text?" in prompt.user
    assert "### Question 2: Which areas feel most affected?" in prompt.user
    assert "**Reflection shown:** (pending)" in prompt.user
    assert "Identifies domains of impact." in prompt.user


def test_missing_version_directory():
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(FileNotFoundError):
            PromptBuilder(tmp, default_version="v1")


def test_unknown_version_at_build_time(builder, intake):
    with pytest.raises(PromptBuildError):
        builder.build_reflection_prompt(
            intake, intake.questions[0], TextValue("x"), (), 0, version="v99"
        )


def test_parts_are_cached(builder):
    first = builder.load_part("intake/reflection-system.md")
    assert builder.load_part("intake/reflection-system.md") is first

"""
Reflection Template Registry

Lookup of pre-authored acknowledgments for selection answers, plus the
fixed texts the session shows when no generated reflection exists.

Template matching:
- Templates live on the question definition (catalog data)
- A template matches only the exact set of selected option values
- Order of selection does not matter; duplicates are rejected upstream
- A selection carrying free "other" text never matches a template
"""

from typing import FrozenSet, Iterable, Optional

from intake_engine.contracts import QuestionDefinition, SelectionValue

# Shown in place of a reflection whose generation failed
REFLECTION_UNAVAILABLE_TEXT = "Thanks for sharing that. (A reflection couldn't be generated for this answer.)"

# Shown while a reflection is still pending
REFLECTION_PENDING_TEXT = "..."


def selection_key(values: Iterable[str]) -> FrozenSet[str]:
    """Order-insensitive key for a selection"""
    return frozenset(values)


def find_template(question: QuestionDefinition, selection: SelectionValue) -> Optional[str]:
    """
    Find the template for an exact selection.

    Args:
        question: Catalog question (selection kind)
        selection: Submitted selection

    Returns:
        str: Template text, or None if no exact match
    """
    if selection.other_text:
        return None

    key = selection_key(selection.values)
    for template in question.reflection_templates:
        if selection_key(template.values) == key:
            return template.text
    return None

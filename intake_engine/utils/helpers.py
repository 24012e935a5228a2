"""
Utility helpers for the intake engine

Session ids, deterministic message ids and JSON repair for model output.
"""

import logging
import uuid

logger = logging.getLogger(__name__)

ROLE_QUESTION = "question"
ROLE_ANSWER = "answer"
ROLE_REFLECTION = "reflection"
MESSAGE_ROLES = {ROLE_QUESTION, ROLE_ANSWER, ROLE_REFLECTION}


def generate_session_id(short=True):
    """
    Generate unique session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def message_id(question_id, role):
    """
    Deterministic transcript message id.

    Derived from the question identity, so no counter or process-wide
    state is involved and a re-render yields the same ids.

    Examples:
        >>> message_id("q1_considering_therapy", "reflection")
        'q1_considering_therapy:reflection'

    Raises:
        ValueError: If role is unknown
    """
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unknown message role: {role}")
    return f"{question_id}:{role}"


def repair_json(text: str) -> str:
    """
    Attempt to repair common JSON formatting issues in model output

    Only handles object output (not arrays). Naive brace balancing does
    not account for braces inside strings.

    Args:
        text: Raw LLM output

    Returns:
        str: Cleaned JSON string (may still fail to parse)
    """
    # Strip markdown code blocks
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    text = text.strip()

    first_brace = text.find('{')
    last_brace = text.rfind('}')

    if first_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text

    if last_brace < first_brace:
        # Truncated output: keep everything from the opening brace
        text = text[first_brace:]
    else:
        text = text[first_brace:last_brace + 1]

    open_count = text.count('{')
    close_count = text.count('}')

    if open_count > close_count:
        missing = open_count - close_count
        text += '}' * missing
        logger.debug(f"Added {missing} closing braces")

    elif close_count > open_count:
        diff = close_count - open_count
        for _ in range(diff):
            last_close = text.rfind('}')
            if last_close != -1:
                text = text[:last_close] + text[last_close + 1:]
        logger.debug(f"Removed {diff} extra closing braces")

    return text

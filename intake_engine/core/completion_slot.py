"""
Completion Slot - Write-once cell for completion outputs

Two independent tasks (the speculative early completion and the
authoritative completion from the final step) may both produce outputs.
The slot keeps the first non-null offer and ignores the rest.

Race resolution happens once, when the final step response arrives:
- early task done with a non-null result: it is offered first and wins
- early task pending, null or failed: the authoritative result wins
- anything offered afterwards is discarded
"""

import asyncio
import logging
from typing import Optional

from intake_engine.contracts import CompletionOutputs

logger = logging.getLogger(__name__)

SOURCE_EARLY = "early"
SOURCE_AUTHORITATIVE = "authoritative"
SOURCE_RETRY = "retry"


class CompletionSlot:
    """First non-null write wins; later writes are no-ops"""

    def __init__(self):
        self._outputs: Optional[CompletionOutputs] = None
        self._source: Optional[str] = None

    @property
    def outputs(self) -> Optional[CompletionOutputs]:
        return self._outputs

    @property
    def source(self) -> Optional[str]:
        return self._source

    @property
    def is_set(self) -> bool:
        return self._outputs is not None

    def offer(self, outputs: Optional[CompletionOutputs], source: str) -> bool:
        """
        Offer a completion result.

        Returns:
            bool: True if this offer was stored
        """
        if outputs is None:
            logger.debug(f"Completion slot: null offer from {source} ignored")
            return False

        if self._outputs is not None:
            logger.warning(
                f"Completion slot: {source} result discarded "
                f"(already set by {self._source})"
            )
            return False

        self._outputs = outputs
        self._source = source
        logger.info(f"Completion slot: resolved by {source}")
        return True


def early_result(task: Optional["asyncio.Task"]) -> Optional[CompletionOutputs]:
    """
    Result of the early task if it has already succeeded, else None.

    Never raises: a pending, cancelled or failed task yields None.
    """
    if task is None or not task.done() or task.cancelled():
        return None
    if task.exception() is not None:
        return None
    return task.result()


def resolve_completion(slot: CompletionSlot,
                       early_task: Optional["asyncio.Task"],
                       authoritative: Optional[CompletionOutputs]) -> Optional[CompletionOutputs]:
    """
    Apply the race rule once the final step response has arrived.

    Args:
        slot: Session completion slot
        early_task: Speculative completion task, if one was started
        authoritative: Outputs from the final step response

    Returns:
        The outputs held by the slot afterwards
    """
    slot.offer(early_result(early_task), SOURCE_EARLY)
    slot.offer(authoritative, SOURCE_AUTHORITATIVE)
    return slot.outputs

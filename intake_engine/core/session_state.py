"""
Session State - Per-session answers and progression cursor

Responsibilities:
- Hold answered_count (the only progression cursor)
- Hold answers keyed by question id
- Merge reflections into existing records
- Track per-question reflection failures
- Snapshot / restore as JSON-safe dicts

Design principles:
- Single writer (the session owner); no locking
- answered_count never decreases; record_answer() is its only writer
- Reflection merges are keyed by question id, never by position, so a
  late response can only touch the record it belongs to
- Dumb container: no model calls, no HTTP

CRITICAL: Cursor vs index
- answered_count is a count, the active question is questions[answered_count]
- answered_count == total_steps means no active question
- A question id below the cursor always has a record
"""

import logging
from typing import Any, Dict, List, Optional

from intake_engine.contracts import (
    Answer,
    AnswerValue,
    IntakeDefinition,
    PENDING,
    QuestionDefinition,
)
from intake_engine.errors import InvalidStep, MergeTargetMissing

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SessionState:
    """Answers and progression for one intake session"""

    def __init__(self, intake: IntakeDefinition):
        """
        Args:
            intake: Definition the session runs through
        """
        self.intake = intake
        self._answered_count = 0
        self._answers: Dict[str, Answer] = {}
        self._reflection_failures: Dict[str, str] = {}
        self._index = {q.id: i for i, q in enumerate(intake.questions)}

        logger.debug(f"Session state initialized ({intake.id}, {intake.total_steps} steps)")

    # ========================
    # Read accessors
    # ========================

    @property
    def answered_count(self) -> int:
        return self._answered_count

    @property
    def total_steps(self) -> int:
        return self.intake.total_steps

    @property
    def is_finished(self) -> bool:
        return self._answered_count >= self.intake.total_steps

    def current_question(self) -> Optional[QuestionDefinition]:
        """Active question, or None when every question is answered"""
        if self.is_finished:
            return None
        return self.intake.questions[self._answered_count]

    def index_of(self, question_id: str) -> Optional[int]:
        return self._index.get(question_id)

    def is_last_question(self, question_id: str) -> bool:
        return self._index.get(question_id) == self.intake.total_steps - 1

    def get_answer(self, question_id: str) -> Optional[Answer]:
        return self._answers.get(question_id)

    def has_answer(self, question_id: str) -> bool:
        return question_id in self._answers

    def ordered_answers(self) -> List[Answer]:
        """Answers in catalog order for every index below the cursor"""
        answers = []
        for question in self.intake.questions[:self._answered_count]:
            answer = self._answers.get(question.id)
            if answer is not None:
                answers.append(answer)
        return answers

    def answers_before(self, question_id: str) -> List[Answer]:
        """Ordered answers for questions preceding question_id"""
        index = self._index.get(question_id, 0)
        return [
            a for a in self.ordered_answers()
            if self._index[a.question_id] < index
        ]

    def reflection_failure(self, question_id: str) -> Optional[str]:
        return self._reflection_failures.get(question_id)

    @property
    def reflection_failures(self) -> Dict[str, str]:
        return dict(self._reflection_failures)

    # ========================
    # Mutations
    # ========================

    def record_answer(self, question_id: str, value: AnswerValue) -> Answer:
        """
        Insert or overwrite an answer and advance the cursor.

        The cursor moves only when question_id is the active question.
        Re-answering an earlier question resets its reflection to Pending.

        Args:
            question_id: Question being answered
            value: Answer value

        Returns:
            The stored Answer (reflection Pending)

        Raises:
            InvalidStep: Unknown question id or a question beyond the cursor.
                Nothing is written.
        """
        index = self._index.get(question_id)
        if index is None:
            raise InvalidStep(self.intake.id, None, f"unknown question id '{question_id}'")
        if index > self._answered_count:
            raise InvalidStep(
                self.intake.id, index,
                f"question '{question_id}' is beyond the cursor ({self._answered_count})"
            )

        question = self.intake.questions[index]
        answer = Answer(
            question_id=question.id,
            question_prompt=question.prompt,
            value=value,
            reflection=PENDING
        )
        self._answers[question_id] = answer
        self._reflection_failures.pop(question_id, None)

        if index == self._answered_count:
            self._answered_count += 1
            logger.debug(f"Cursor advanced to {self._answered_count}/{self.total_steps}")
        else:
            logger.info(f"[{question_id}] re-answered (cursor stays at {self._answered_count})")

        return answer

    def merge_reflection(self, question_id: str, reflection: str) -> bool:
        """
        Set the reflection on an existing record.

        A missing record is logged and ignored.

        Returns:
            bool: True if a record was updated
        """
        answer = self._answers.get(question_id)
        if answer is None:
            logger.warning(f"Reflection merge skipped: {MergeTargetMissing(question_id)}")
            return False

        self._answers[question_id] = answer.with_reflection(reflection)
        self._reflection_failures.pop(question_id, None)
        logger.debug(f"[{question_id}] reflection merged")
        return True

    def record_reflection_failure(self, question_id: str, message: str) -> bool:
        """
        Mark a question's reflection as failed. The cursor is never rolled back.

        Returns:
            bool: True if a record exists for the question
        """
        if question_id not in self._answers:
            logger.warning(f"Reflection failure not recorded: {MergeTargetMissing(question_id)}")
            return False

        self._reflection_failures[question_id] = message
        logger.debug(f"[{question_id}] reflection failure recorded")
        return True

    # ========================
    # Snapshot
    # ========================

    def snapshot(self) -> Dict[str, Any]:
        """
        JSON-safe deep copy of the session state.

        Answers are listed in catalog order.
        """
        answers = [
            self._answers[q.id].to_json()
            for q in self.intake.questions
            if q.id in self._answers
        ]
        return {
            'snapshot_version': SNAPSHOT_VERSION,
            'intake_type': self.intake.id,
            'intake_version': self.intake.version,
            'answered_count': self._answered_count,
            'answers': answers,
            'reflection_failures': dict(self._reflection_failures),
        }

    @classmethod
    def from_snapshot(cls, intake: IntakeDefinition, snapshot: Dict[str, Any]) -> "SessionState":
        """
        Rebuild state from snapshot().

        Raises:
            ValueError: If the snapshot does not belong to this intake or is
                inconsistent with it
        """
        if snapshot.get('snapshot_version') != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version: {snapshot.get('snapshot_version')}")
        if snapshot.get('intake_type') != intake.id:
            raise ValueError(
                f"Snapshot is for intake '{snapshot.get('intake_type')}', not '{intake.id}'"
            )

        state = cls(intake)
        answered_count = snapshot.get('answered_count', 0)
        if not isinstance(answered_count, int) or not 0 <= answered_count <= intake.total_steps:
            raise ValueError(f"Invalid answered_count in snapshot: {answered_count}")

        for data in snapshot.get('answers', []):
            answer = Answer.from_json(data)
            if answer.question_id not in state._index:
                raise ValueError(f"Snapshot answer for unknown question '{answer.question_id}'")
            state._answers[answer.question_id] = answer

        for question in intake.questions[:answered_count]:
            if question.id not in state._answers:
                raise ValueError(f"Snapshot missing answer for '{question.id}' below cursor")

        state._answered_count = answered_count
        state._reflection_failures = {
            str(k): str(v) for k, v in snapshot.get('reflection_failures', {}).items()
        }
        return state

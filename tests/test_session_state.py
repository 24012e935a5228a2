"""
Unit tests for Session State

Monotonic cursor, keyed merges, snapshots
"""

import json
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intake_engine.contracts import Pending, Resolved, SelectionValue, TextValue
from intake_engine.core.definition_catalog import DefinitionCatalog
from intake_engine.core.session_state import SessionState
from intake_engine.errors import InvalidStep

from fakes import four_question_definition

VALUES = {
    "q1_text": TextValue("I feel stuck."),
    "q2_areas": SelectionValue(("work", "stress")),
    "q3_text": TextValue("I shut down."),
    "q4_readiness": SelectionValue(("ready",)),
}


class SessionStateTestCase(unittest.TestCase):

    def setUp(self):
        catalog = DefinitionCatalog.from_definitions([four_question_definition()])
        self.intake = catalog.get("four_step")
        self.state = SessionState(self.intake)


class TestProgression(SessionStateTestCase):

    def test_starts_at_first_question(self):
        self.assertEqual(self.state.answered_count, 0)
        self.assertEqual(self.state.current_question().id, "q1_text")
        self.assertEqual(self.state.ordered_answers(), [])

    def test_monotonic_cursor(self):
        history = [self.state.answered_count]
        for qid in ["q1_text", "q2_areas", "q1_text", "q3_text", "q2_areas", "q4_readiness"]:
            self.state.record_answer(qid, VALUES[qid])
            history.append(self.state.answered_count)

        self.assertEqual(history, [0, 1, 2, 2, 3, 3, 4])
        self.assertEqual(history, sorted(history))
        self.assertTrue(self.state.is_finished)
        self.assertIsNone(self.state.current_question())

    def test_record_answer_starts_pending(self):
        answer = self.state.record_answer("q1_text", VALUES["q1_text"])

        self.assertIsInstance(answer.reflection, Pending)
        self.assertEqual(answer.question_prompt, "Prompt for q1_text?")

    def test_re_answer_resets_reflection(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        self.state.record_answer("q2_areas", VALUES["q2_areas"])
        self.state.merge_reflection("q1_text", "That sounds hard.")

        self.state.record_answer("q1_text", TextValue("Actually, work."))

        answer = self.state.get_answer("q1_text")
        self.assertEqual(answer.value, TextValue("Actually, work."))
        self.assertIsInstance(answer.reflection, Pending)
        self.assertEqual(self.state.answered_count, 2)

    def test_beyond_cursor_rejected_without_mutation(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        before = self.state.snapshot()

        with self.assertRaises(InvalidStep):
            self.state.record_answer("q3_text", VALUES["q3_text"])
        with self.assertRaises(InvalidStep):
            self.state.record_answer("unknown", TextValue("x"))

        self.assertEqual(self.state.snapshot(), before)

    def test_ordered_answers_follow_catalog(self):
        for qid in ["q1_text", "q2_areas", "q3_text"]:
            self.state.record_answer(qid, VALUES[qid])

        ids = [a.question_id for a in self.state.ordered_answers()]
        self.assertEqual(ids, ["q1_text", "q2_areas", "q3_text"])
        before_q3 = [a.question_id for a in self.state.answers_before("q3_text")]
        self.assertEqual(before_q3, ["q1_text", "q2_areas"])


class TestMerges(SessionStateTestCase):

    def test_key_isolation(self):
        for qid in ["q1_text", "q2_areas", "q3_text"]:
            self.state.record_answer(qid, VALUES[qid])
        self.state.merge_reflection("q2_areas", "B")
        self.state.merge_reflection("q3_text", "C")

        b_before = self.state.get_answer("q2_areas")
        c_before = self.state.get_answer("q3_text")
        count_before = self.state.answered_count

        # Late response for the first question
        self.assertTrue(self.state.merge_reflection("q1_text", "A"))

        self.assertEqual(self.state.get_answer("q1_text").reflection, Resolved("A"))
        self.assertIs(self.state.get_answer("q2_areas"), b_before)
        self.assertIs(self.state.get_answer("q3_text"), c_before)
        self.assertEqual(self.state.answered_count, count_before)

    def test_merge_missing_target_is_noop(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        before = self.state.snapshot()

        with self.assertLogs("intake_engine.core.session_state", level="WARNING"):
            self.assertFalse(self.state.merge_reflection("q3_text", "late"))

        self.assertEqual(self.state.snapshot(), before)

    def test_empty_reflection_is_resolved(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        self.state.merge_reflection("q1_text", "")

        answer = self.state.get_answer("q1_text")
        self.assertTrue(answer.is_reflected)
        self.assertEqual(answer.reflection, Resolved(""))

    def test_reflection_failure_keeps_cursor(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        self.state.record_answer("q2_areas", VALUES["q2_areas"])

        self.assertTrue(self.state.record_reflection_failure("q1_text", "timeout"))

        self.assertEqual(self.state.answered_count, 2)
        self.assertEqual(self.state.reflection_failure("q1_text"), "timeout")
        self.assertIsInstance(self.state.get_answer("q1_text").reflection, Pending)

    def test_merge_clears_failure(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        self.state.record_reflection_failure("q1_text", "timeout")
        self.state.merge_reflection("q1_text", "Thanks.")

        self.assertIsNone(self.state.reflection_failure("q1_text"))


class TestSnapshot(SessionStateTestCase):

    def test_round_trip(self):
        for qid in ["q1_text", "q2_areas"]:
            self.state.record_answer(qid, VALUES[qid])
        self.state.merge_reflection("q1_text", "A")
        self.state.record_reflection_failure("q2_areas", "boom")

        snapshot = json.loads(json.dumps(self.state.snapshot()))
        restored = SessionState.from_snapshot(self.intake, snapshot)

        self.assertEqual(restored.answered_count, 2)
        self.assertEqual(restored.ordered_answers(), self.state.ordered_answers())
        self.assertEqual(restored.reflection_failures, {"q2_areas": "boom"})

    def test_snapshot_is_a_copy(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        snapshot = self.state.snapshot()
        snapshot['answers'][0]['answer'] = "tampered"
        snapshot['answered_count'] = 99

        self.assertEqual(self.state.get_answer("q1_text").value, VALUES["q1_text"])
        self.assertEqual(self.state.answered_count, 1)

    def test_snapshot_for_other_intake_rejected(self):
        snapshot = self.state.snapshot()
        snapshot['intake_type'] = "other"

        with self.assertRaises(ValueError):
            SessionState.from_snapshot(self.intake, snapshot)

    def test_snapshot_missing_answer_below_cursor_rejected(self):
        self.state.record_answer("q1_text", VALUES["q1_text"])
        snapshot = self.state.snapshot()
        snapshot['answers'] = []

        with self.assertRaises(ValueError):
            SessionState.from_snapshot(self.intake, snapshot)


if __name__ == '__main__':
    unittest.main()

"""
Error taxonomy for the intake engine.

Caller errors (fatal for the call, nothing written):
- UnknownIntake: intake type not in the catalog
- InvalidStep: step index / question id cannot be resolved
- InvalidAnswer: answer value does not fit the question kind

Recoverable:
- GenerationFailure: the generation capability errored or timed out

Internal consistency:
- MergeTargetMissing: a reflection arrived for a record that does not exist.
  Logged, never raised out of the session store.
"""

from typing import Optional


class IntakeError(Exception):
    """Base class for all intake engine errors"""
    pass


class UnknownIntake(IntakeError):
    """Intake type is not registered in the catalog"""

    def __init__(self, intake_type: str):
        self.intake_type = intake_type
        super().__init__(f"Unknown intake type: {intake_type}")


class InvalidStep(IntakeError):
    """Step index or question id does not resolve against the catalog"""

    def __init__(self, intake_type: str, step_index: Optional[int] = None,
                 reason: Optional[str] = None):
        self.intake_type = intake_type
        self.step_index = step_index
        message = f"Invalid step index: {step_index} (intake={intake_type})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidAnswer(IntakeError):
    """Answer value does not match the question kind or options"""

    def __init__(self, question_id: str, reason: str):
        self.question_id = question_id
        self.reason = reason
        super().__init__(f"Invalid answer for {question_id}: {reason}")


class GenerationFailure(IntakeError):
    """
    The generation capability failed (error, timeout, unusable output).

    Always retryable: every generation call is side-effect free.
    """

    retryable = True

    def __init__(self, message: str, tier: Optional[str] = None,
                 schema_name: Optional[str] = None):
        self.tier = tier
        self.schema_name = schema_name
        super().__init__(message)


class MergeTargetMissing(IntakeError):
    """Reflection merge targeted a question id with no answer record"""

    def __init__(self, question_id: str):
        self.question_id = question_id
        super().__init__(f"No answer record for question {question_id}")

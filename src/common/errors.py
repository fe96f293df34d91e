# ABOUTME: Declares the only failure signals the engines raise to callers.
# ABOUTME: Unknown question references and configuration invariant violations.


class UnknownQuestionError(KeyError):
    """An answer references a question id missing from the question bank."""

    def __init__(self, question_id: str, assessment_id: str = ""):
        self.question_id = question_id
        self.assessment_id = assessment_id
        where = f" in assessment '{assessment_id}'" if assessment_id else ""
        super().__init__(f"Unknown question '{question_id}'{where}.")

    def __str__(self) -> str:
        return self.args[0]


class ConfigError(ValueError):
    """Engine configuration violates an invariant."""

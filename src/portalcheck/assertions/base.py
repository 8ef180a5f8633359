"""Base data structures for the assertion system."""

from dataclasses import dataclass

from portalcheck.probe import MismatchClass


@dataclass
class AssertionResult:
    """Result of evaluating a single dependent assertion.

    Attributes:
        name: Identifier for the assertion (e.g. "has_field:data").
        passed: Whether the assertion held.
        message: Human-readable detail about the result.
        score: 1.0 when passed, 0.0 otherwise.
        weight: Relative importance when computing a weighted score.
        mismatch_class: Class of variance a failure belongs to. Failures in
            an environment-sensitive class are downgraded on local runs.
        downgraded: True when a failure was reported as a warning instead.
    """

    name: str
    passed: bool
    message: str
    score: float = 0.0
    weight: float = 1.0
    mismatch_class: MismatchClass = MismatchClass.STATUS
    downgraded: bool = False

    @property
    def blocking(self) -> bool:
        return not self.passed and not self.downgraded

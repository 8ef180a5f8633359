"""Dependent assertions evaluated once a probe's status matched."""

from portalcheck.assertions.base import AssertionResult
from portalcheck.assertions.structural import evaluate_assertion, lookup

__all__ = ["AssertionResult", "evaluate_assertion", "lookup"]

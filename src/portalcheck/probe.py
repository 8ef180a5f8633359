"""Probe results and the outcome types the assertion runner produces."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from requests.structures import CaseInsensitiveDict

NOT_FOUND = 404
PRESENT = 1
ABSENT = 0


class PortalcheckError(Exception):
    """Base class for errors raised by portalcheck."""


class ProbeExecutionError(PortalcheckError):
    """The probe itself could not complete (network failure, timeout, navigation error)."""

    def __init__(self, context: str, reason: str):
        super().__init__(f"{context}: {reason}")
        self.context = context
        self.reason = reason


class Environment(str, Enum):
    CI = "ci"
    LOCAL = "local"


class MismatchClass(str, Enum):
    STATUS = "status"
    TIMING = "timing"
    THIRD_PARTY = "third_party"
    RENDERING = "rendering"
    HEADER = "header"
    SECURITY = "security"


class Verdict(str, Enum):
    PASS = "pass"
    SKIP = "skip"
    FAIL = "fail"
    ERROR = "error"


def detect_environment(env: Mapping[str, str] | None = None) -> Environment:
    """Return CI when the CI variable is set to anything but a falsy marker."""
    env = os.environ if env is None else env
    value = env.get("CI", "").strip().lower()
    if value and value not in {"0", "false", "no", "off"}:
        return Environment.CI
    return Environment.LOCAL


def normalize_expected(expected: int | Iterable[int]) -> frozenset[int]:
    if isinstance(expected, int):
        return frozenset({expected})
    return frozenset(expected)


@dataclass
class ProbeResult:
    """Observed outcome of a single HTTP request or UI query.

    Attributes:
        status: HTTP status code, or PRESENT/ABSENT for UI probes.
        expected_status: Status or statuses counted as success.
        context: Label naming the probed endpoint or UI affordance.
        environment: Whether the run is on CI or a developer machine.
        endpoint: Path looked up in the optional-endpoint table.
            Defaults to ``context``.
        mismatch_class: Class of variance a status mismatch belongs to.
        body: Decoded JSON body, raw text, or None.
        headers: Response headers (case-insensitive).
        elapsed_ms: Wall-clock duration of the probe.
    """

    status: int
    expected_status: int | frozenset[int]
    context: str
    environment: Environment = Environment.LOCAL
    endpoint: str | None = None
    mismatch_class: MismatchClass = MismatchClass.STATUS
    body: Any = None
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    elapsed_ms: float | None = None

    def __post_init__(self) -> None:
        self.expected_status = normalize_expected(self.expected_status)
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers or {})
        if self.endpoint is None:
            self.endpoint = self.context

    @property
    def expected(self) -> frozenset[int]:
        return self.expected_status  # type: ignore[return-value]

    @property
    def matched(self) -> bool:
        return self.status in self.expected

    def describe_expected(self) -> str:
        return "|".join(str(s) for s in sorted(self.expected))

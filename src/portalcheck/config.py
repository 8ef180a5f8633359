from __future__ import annotations

import os
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from expandvars import expandvars
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portalcheck.probe import Environment, MismatchClass, detect_environment

DEFAULT_SUITE = Path(__file__).parent / "suites" / "portal.yaml"


class TargetConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    api_base_url: str = "https://api.va.gov/v1"
    api_root_url: str = "https://api.va.gov"
    site_url: str = "https://digital.va.gov"
    api_key: str = "test-key"
    invalid_api_key: str = "invalid-key"
    timeout: float = 20.0

    @field_validator("api_base_url", "api_root_url", "site_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("timeout")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v


class PolicyConfig(BaseModel):
    """Which 404s are tolerated and which mismatches only fail on CI."""

    model_config = ConfigDict(extra="forbid")
    environment: Literal["auto", "ci", "local"] = "auto"
    optional_endpoints: list[str] = []
    environment_sensitive: list[MismatchClass] = [
        MismatchClass.TIMING,
        MismatchClass.THIRD_PARTY,
        MismatchClass.RENDERING,
        MismatchClass.HEADER,
    ]

    def resolve_environment(self) -> Environment:
        if self.environment == "auto":
            return detect_environment()
        return Environment(self.environment)

    def is_optional(self, endpoint: str) -> bool:
        path = endpoint.split("?", 1)[0]
        return any(fnmatchcase(path, pattern) for pattern in self.optional_endpoints)

    def is_environment_sensitive(self, mismatch_class: MismatchClass) -> bool:
        return mismatch_class in self.environment_sensitive


class ThresholdsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    p95_ms: float | None = None
    p99_ms: float | None = None
    max_error_rate: float | None = None


class LoadStage(BaseModel):
    """Ramp to ``users`` concurrent users over ``duration`` seconds."""

    model_config = ConfigDict(extra="forbid")
    duration: int = Field(gt=0)
    users: int = Field(ge=0)
    spawn_rate: float | None = None


class LoadConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    user_classes: list[Literal["PortalUser", "ApiUser"]] = ["PortalUser", "ApiUser"]
    stages: list[LoadStage] = [
        LoadStage(duration=30, users=10),
        LoadStage(duration=60, users=50),
        LoadStage(duration=30, users=0),
    ]
    thresholds: ThresholdsConfig = ThresholdsConfig(
        p95_ms=500, p99_ms=1000, max_error_rate=0.05
    )

    @field_validator("stages")
    @classmethod
    def stages_must_not_be_empty(cls, v: list[LoadStage]) -> list[LoadStage]:
        if not v:
            raise ValueError("stages must not be empty")
        return v

    @property
    def total_seconds(self) -> int:
        return sum(s.duration for s in self.stages)


# --- dependent assertions ---------------------------------------------------


class _AssertionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")
    weight: float = 1.0
    mismatch_class: MismatchClass | None = None


class HasFieldAssertion(_AssertionBase):
    has_field: str


class IsArrayAssertion(_AssertionBase):
    is_array: str


class EachHasFieldsSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path: str
    fields: list[str]


class EachHasFieldsAssertion(_AssertionBase):
    each_has_fields: EachHasFieldsSpec


class FieldEqualsSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path: str
    value: Any


class FieldEqualsAssertion(_AssertionBase):
    field_equals: FieldEqualsSpec


class HeaderMatchesSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    header: str
    pattern: str


class HeaderMatchesAssertion(_AssertionBase):
    header_matches: HeaderMatchesSpec


class HeaderPresentAssertion(_AssertionBase):
    header_present: str | list[str]


class BodyMatchesAssertion(_AssertionBase):
    body_matches: str


class BodyNotMatchesAssertion(_AssertionBase):
    body_not_matches: str


class IsoTimestampAssertion(_AssertionBase):
    iso_timestamp: str


class MaxDurationAssertion(_AssertionBase):
    max_duration_ms: float


class EqualsCapturedSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path: str
    key: str


class EqualsCapturedAssertion(_AssertionBase):
    equals_captured: EqualsCapturedSpec


Assertion = (
    HasFieldAssertion
    | IsArrayAssertion
    | EachHasFieldsAssertion
    | FieldEqualsAssertion
    | HeaderMatchesAssertion
    | HeaderPresentAssertion
    | BodyMatchesAssertion
    | BodyNotMatchesAssertion
    | IsoTimestampAssertion
    | MaxDurationAssertion
    | EqualsCapturedAssertion
)


# --- checks -----------------------------------------------------------------


class RequestSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"] = "GET"
    path: str
    base: Literal["api", "root", "site"] = "api"
    auth: Literal["bearer", "apikey", "invalid", "none"] = "bearer"
    headers: dict[str, str] = {}
    params: dict[str, str | int | float] = {}
    json_body: Any = Field(default=None, alias="json")
    expect_json: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class BatchSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    size: int = Field(ge=1, le=100)
    require: Literal["all", "any"] = "all"
    retry_after_on_429: bool = True


class StepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str | None = None
    request: RequestSpec
    expect_status: int | list[int] = 200
    assertions: list[Assertion] = []
    capture: dict[str, str] = {}
    endpoint: str | None = None
    optional: bool | None = None
    mismatch_class: MismatchClass = MismatchClass.STATUS
    when_captured: str | None = None
    batch: BatchSpec | None = None

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"{self.request.method} {self.request.path}"


class CheckConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    description: str | None = None
    tags: list[str] = []
    steps: list[StepConfig]

    @model_validator(mode="before")
    @classmethod
    def single_step_shorthand(cls, data: Any) -> Any:
        """Allow a check to declare one step inline instead of under ``steps``."""
        if isinstance(data, dict) and "steps" not in data and "request" in data:
            step_keys = set(StepConfig.model_fields) - {"name"}
            step = {k: v for k, v in data.items() if k in step_keys}
            rest = {k: v for k, v in data.items() if k not in step_keys}
            return {**rest, "steps": [step]}
        return data

    @field_validator("steps")
    @classmethod
    def steps_must_not_be_empty(cls, v: list[StepConfig]) -> list[StepConfig]:
        if not v:
            raise ValueError("steps must not be empty")
        return v


class SuiteConfig(BaseModel):
    target: TargetConfig = TargetConfig()
    policy: PolicyConfig = PolicyConfig()
    thresholds: ThresholdsConfig = ThresholdsConfig()
    load: LoadConfig = LoadConfig()
    checks: list[CheckConfig]

    @field_validator("checks")
    @classmethod
    def check_names_unique(cls, v: list[CheckConfig]) -> list[CheckConfig]:
        seen: set[str] = set()
        for check in v:
            if check.name in seen:
                raise ValueError(f"Duplicate check name '{check.name}'")
            if "," in check.name:
                raise ValueError(f"Check name '{check.name}' must not contain a comma")
            seen.add(check.name)
        return v

    @model_validator(mode="after")
    def checks_must_not_be_empty(self) -> SuiteConfig:
        if not self.checks:
            raise ValueError("checks must not be empty")
        return self


def _expand(obj: Any, missing: list[str], where: str = "") -> Any:
    """Expand ${VAR} references in every string of a parsed YAML tree."""
    if isinstance(obj, dict):
        return {k: _expand(v, missing, f"{where}.{k}" if where else str(k)) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand(v, missing, f"{where}[{i}]") for i, v in enumerate(obj)]
    if isinstance(obj, str) and "$" in obj:
        try:
            return expandvars(obj, nounset=True)
        except Exception:
            # Variable is missing and has no default
            missing.append(f"  {where}={obj}")
            return obj
    return obj


def load_config(path: Path) -> SuiteConfig:
    """Load and validate a suite config from a YAML file.

    A ``.env`` file next to the config is loaded first; variables already set
    in the environment win. Raises ValueError listing every unset ``${VAR}``
    that has no default.
    """
    env_file = path.parent / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a YAML mapping")

    missing: list[str] = []
    expanded = _expand(raw, missing)
    if missing:
        details = "\n".join(missing)
        raise ValueError(f"Suite '{path}' has missing environment variables:\n{details}")

    return SuiteConfig(**expanded)


def load_default_config() -> SuiteConfig:
    return load_config(DEFAULT_SUITE)


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Explicit path, else $PORTALCHECK_CONFIG, else the bundled portal suite."""
    if path is None:
        path = os.environ.get("PORTALCHECK_CONFIG")
    return Path(path) if path else DEFAULT_SUITE

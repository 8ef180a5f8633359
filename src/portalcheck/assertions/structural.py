"""Structural assertions evaluated against a probe whose status matched."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping

from pydantic import BaseModel, TypeAdapter

from portalcheck.assertions.base import AssertionResult
from portalcheck.config import Assertion
from portalcheck.probe import MismatchClass, ProbeResult

ISO_8601 = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")

_MISSING = object()

_DEFAULT_CLASSES = {
    "header_matches": MismatchClass.HEADER,
    "header_present": MismatchClass.HEADER,
    "max_duration_ms": MismatchClass.TIMING,
}

ASSERTION_TYPES = frozenset(
    {
        "has_field",
        "is_array",
        "each_has_fields",
        "field_equals",
        "header_matches",
        "header_present",
        "body_matches",
        "body_not_matches",
        "iso_timestamp",
        "max_duration_ms",
        "equals_captured",
    }
)

_ASSERTION = TypeAdapter(Assertion)


def lookup(body: Any, path: str) -> Any:
    """Resolve a dotted path such as ``data.0.id`` inside a decoded JSON body.

    ``a|b`` tries each alternative in order and returns the first one present.
    Returns the module-level ``_MISSING`` sentinel when nothing resolves.
    """
    for alternative in path.split("|"):
        node = body
        for part in alternative.strip().split("."):
            if isinstance(node, Mapping) and part in node:
                node = node[part]
            elif isinstance(node, list) and part.lstrip("-").isdigit():
                index = int(part)
                if -len(node) <= index < len(node):
                    node = node[index]
                else:
                    node = _MISSING
                    break
            else:
                node = _MISSING
                break
        if node is not _MISSING:
            return node
    return _MISSING


def is_missing(value: Any) -> bool:
    return value is _MISSING


def _result(name: str, passed: bool, ok: str, failed: str) -> AssertionResult:
    return AssertionResult(
        name=name,
        passed=passed,
        message=ok if passed else failed,
        score=1.0 if passed else 0.0,
    )


def _body_text(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    return json.dumps(body, default=str)


def check_has_field(body: Any, path: str, logger: logging.Logger) -> AssertionResult:
    """Check that a field is present in the JSON body."""
    present = not is_missing(lookup(body, path))
    logger.info(f"Field {path} present={present}")
    return _result(
        f"has_field:{path}", present, f"{path} present", f"{path} missing from body"
    )


def check_is_array(body: Any, path: str, logger: logging.Logger) -> AssertionResult:
    value = lookup(body, path)
    passed = isinstance(value, list)
    kind = "missing" if is_missing(value) else type(value).__name__
    logger.info(f"Field {path} is array={passed}")
    return _result(
        f"is_array:{path}", passed, f"{path} is an array", f"{path} is {kind}, not an array"
    )


def check_each_has_fields(
    body: Any, path: str, fields: list[str], logger: logging.Logger
) -> AssertionResult:
    """Check that every element of an array carries the given fields."""
    name = f"each_has_fields:{path}"
    items = lookup(body, path)
    if not isinstance(items, list):
        return _result(name, False, "", f"{path} is not an array")

    problems = []
    for index, item in enumerate(items):
        absent = [f for f in fields if is_missing(lookup(item, f))]
        if absent:
            problems.append(f"[{index}] missing {', '.join(absent)}")

    logger.info(f"Checked {len(items)} element(s) of {path} for {fields}")
    return _result(
        name,
        not problems,
        f"{len(items)} element(s) carry {', '.join(fields)}",
        "; ".join(problems[:5]),
    )


def check_field_equals(
    body: Any, path: str, expected: Any, logger: logging.Logger
) -> AssertionResult:
    actual = lookup(body, path)
    shown = "missing" if is_missing(actual) else repr(actual)
    passed = not is_missing(actual) and actual == expected
    logger.info(f"Field {path}={shown}, expected {expected!r}")
    return _result(
        f"field_equals:{path}",
        passed,
        f"{path} == {expected!r}",
        f"{path} is {shown}, expected {expected!r}",
    )


def check_header_matches(
    headers: Mapping[str, str], header: str, pattern: str, logger: logging.Logger
) -> AssertionResult:
    name = f"header_matches:{header}"
    value = headers.get(header)
    if value is None:
        logger.info(f"Header {header} absent")
        return _result(name, False, "", f"{header} header missing")
    matched = re.search(pattern, value, re.IGNORECASE) is not None
    logger.info(f"Header {header}='{value}' matches '{pattern}'={matched}")
    return _result(
        name,
        matched,
        f"{header} matches '{pattern}'",
        f"{header}='{value}' does not match '{pattern}'",
    )


def check_header_present(
    headers: Mapping[str, str], names: str | list[str], logger: logging.Logger
) -> AssertionResult:
    """Check that at least one of the named headers is present and non-empty."""
    candidates = [names] if isinstance(names, str) else list(names)
    found = next((h for h in candidates if headers.get(h)), None)
    logger.info(f"Header present among {candidates}: {found}")
    return _result(
        f"header_present:{'|'.join(candidates)}",
        found is not None,
        f"{found} present",
        f"none of {', '.join(candidates)} present",
    )


def check_body_matches(body: Any, pattern: str, logger: logging.Logger) -> AssertionResult:
    matched = re.search(pattern, _body_text(body)) is not None
    logger.info(f"Body matches '{pattern}'={matched}")
    return _result(
        f"body_matches:{pattern}",
        matched,
        f"body matches '{pattern}'",
        f"body does not match '{pattern}'",
    )


def check_body_not_matches(
    body: Any, pattern: str, logger: logging.Logger
) -> AssertionResult:
    match = re.search(pattern, _body_text(body))
    logger.info(f"Body matches forbidden '{pattern}'={match is not None}")
    return _result(
        f"body_not_matches:{pattern}",
        match is None,
        f"body free of '{pattern}'",
        f"body contains '{match.group(0)[:80]}'" if match else "",
    )


def check_iso_timestamp(body: Any, path: str, logger: logging.Logger) -> AssertionResult:
    """Check that a timestamp field, when present, is ISO 8601."""
    name = f"iso_timestamp:{path}"
    value = lookup(body, path)
    if is_missing(value) or value is None:
        logger.info(f"Timestamp {path} absent, nothing to check")
        return _result(name, True, f"{path} absent", "")
    passed = isinstance(value, str) and ISO_8601.match(value) is not None
    return _result(
        name, passed, f"{path} is ISO 8601", f"{path}={value!r} is not ISO 8601"
    )


def check_max_duration(
    elapsed_ms: float | None, budget_ms: float, logger: logging.Logger
) -> AssertionResult:
    name = f"max_duration_ms:{budget_ms:g}"
    if elapsed_ms is None:
        return _result(name, False, "", "probe duration not recorded")
    passed = elapsed_ms < budget_ms
    logger.info(f"Probe took {elapsed_ms:.0f}ms, budget {budget_ms:g}ms")
    return _result(
        name,
        passed,
        f"{elapsed_ms:.0f}ms < {budget_ms:g}ms",
        f"{elapsed_ms:.0f}ms exceeds {budget_ms:g}ms",
    )


def check_equals_captured(
    body: Any,
    path: str,
    key: str,
    captured: Mapping[str, Any],
    logger: logging.Logger,
) -> AssertionResult:
    """Compare a field with a value captured by an earlier step of the same check."""
    name = f"equals_captured:{path}=={key}"
    if key not in captured:
        return _result(name, False, "", f"nothing captured under '{key}'")
    actual = lookup(body, path)
    expected = captured[key]
    shown = "missing" if is_missing(actual) else repr(actual)
    logger.info(f"Comparing {path}={shown} with captured {key}={expected!r}")
    return _result(
        name,
        not is_missing(actual) and actual == expected,
        f"{path} agrees with {key}",
        f"{path} is {shown}, captured {key} is {expected!r}",
    )


def evaluate_assertion(
    probe: ProbeResult,
    assertion_dict: dict[str, Any] | BaseModel,
    *,
    captured: Mapping[str, Any] | None = None,
    logger: logging.Logger | None = None,
) -> AssertionResult:
    """Dispatch an assertion dict to the appropriate checker.

    Supported formats:
        {"has_field": "data"}
        {"is_array": "data"}
        {"each_has_fields": {"path": "data", "fields": ["id", "name"]}}
        {"field_equals": {"path": "verified", "value": true}}
        {"header_matches": {"header": "content-type", "pattern": "json"}}
        {"header_present": ["x-request-id", "x-correlation-id"]}
        {"body_matches": "pattern"}
        {"body_not_matches": "pattern"}
        {"iso_timestamp": "data.0.date"}
        {"max_duration_ms": 2000}
        {"equals_captured": {"path": "data.name", "key": "benefit_name"}}

    All types accept optional ``weight`` and ``mismatch_class`` fields.

    Plain dicts naming a known type are validated like suite YAML, so a
    malformed one raises pydantic.ValidationError (a ValueError).

    Raises ValueError for unknown assertion types.
    """
    if not assertion_dict:
        raise ValueError("Empty assertion dict")

    if isinstance(assertion_dict, BaseModel):
        assertion_dict = assertion_dict.model_dump(exclude_none=True)
    elif ASSERTION_TYPES.intersection(assertion_dict):
        assertion_dict = _ASSERTION.validate_python(assertion_dict).model_dump(
            exclude_none=True
        )

    if logger is None:
        logger = logging.getLogger(__name__)

    weight = assertion_dict.get("weight", 1.0)
    mismatch_class = assertion_dict.get("mismatch_class")

    atype = next(
        (k for k in assertion_dict if k not in ("weight", "mismatch_class")), None
    )
    if atype is None:
        raise ValueError("Assertion names no check")
    value = assertion_dict[atype]
    body = probe.body

    if atype == "has_field":
        result = check_has_field(body, value, logger)
    elif atype == "is_array":
        result = check_is_array(body, value, logger)
    elif atype == "each_has_fields":
        result = check_each_has_fields(body, value["path"], value["fields"], logger)
    elif atype == "field_equals":
        result = check_field_equals(body, value["path"], value.get("value"), logger)
    elif atype == "header_matches":
        result = check_header_matches(
            probe.headers, value["header"], value["pattern"], logger
        )
    elif atype == "header_present":
        result = check_header_present(probe.headers, value, logger)
    elif atype == "body_matches":
        result = check_body_matches(body, value, logger)
    elif atype == "body_not_matches":
        result = check_body_not_matches(body, value, logger)
    elif atype == "iso_timestamp":
        result = check_iso_timestamp(body, value, logger)
    elif atype == "max_duration_ms":
        result = check_max_duration(probe.elapsed_ms, float(value), logger)
    elif atype == "equals_captured":
        result = check_equals_captured(
            body, value["path"], value["key"], captured or {}, logger
        )
    else:
        raise ValueError(f"Unknown assertion type: '{atype}'")

    result.weight = weight
    result.mismatch_class = MismatchClass(
        mismatch_class or _DEFAULT_CLASSES.get(atype, MismatchClass.STATUS)
    )
    return result

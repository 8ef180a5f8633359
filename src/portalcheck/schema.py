"""Generate JSON Schema and docs for the suite YAML format."""

from __future__ import annotations

import json
from pathlib import Path

from portalcheck.config import SuiteConfig
from portalcheck.probe import MismatchClass

ASSERTION_MODELS = [
    "HasFieldAssertion",
    "IsArrayAssertion",
    "EachHasFieldsAssertion",
    "FieldEqualsAssertion",
    "HeaderMatchesAssertion",
    "HeaderPresentAssertion",
    "BodyMatchesAssertion",
    "BodyNotMatchesAssertion",
    "IsoTimestampAssertion",
    "MaxDurationAssertion",
    "EqualsCapturedAssertion",
]

# Assertions whose value is an object; the rest take a scalar
_SPEC_MODELS = {
    "each_has_fields": "EachHasFieldsSpec",
    "field_equals": "FieldEqualsSpec",
    "header_matches": "HeaderMatchesSpec",
    "equals_captured": "EqualsCapturedSpec",
}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _collect_refs(obj: object) -> set[str]:
    """Return all ``$defs`` names referenced via ``$ref`` inside *obj*."""
    refs: set[str] = set()
    if isinstance(obj, dict):
        ref = obj.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            refs.add(ref.removeprefix("#/$defs/"))
        for v in obj.values():
            refs |= _collect_refs(v)
    elif isinstance(obj, list):
        for v in obj:
            refs |= _collect_refs(v)
    return refs


def _order_defs(defs: dict) -> dict:
    """Topologically sort ``$defs`` so referenced types precede referencing types."""
    ordered: dict[str, dict] = {}
    visited: set[str] = set()

    def _visit(name: str) -> None:
        if name in visited or name not in defs:
            return
        visited.add(name)
        for dep in sorted(_collect_refs(defs[name])):
            _visit(dep)
        ordered[name] = defs[name]

    for name in defs:
        _visit(name)
    return ordered


def generate_json_schema() -> dict:
    schema = SuiteConfig.model_json_schema(by_alias=True)
    schema["title"] = "portalcheck suite"
    if "$defs" in schema:
        schema["$defs"] = _order_defs(schema["$defs"])
    return schema


def write_json_schema(path: Path) -> None:
    _ensure_parent(path)
    path.write_text(json.dumps(generate_json_schema(), indent=2) + "\n")


def generate_schema_doc() -> str:
    defs = generate_json_schema().get("$defs", {})

    lines = [
        "# portalcheck suite YAML",
        "",
        "This doc is generated from the Pydantic models.",
        "",
        "## Top-level keys",
        "- `target`: API and site base URLs, API key, per-probe timeout (seconds).",
        "- `policy`: optional endpoints (glob patterns) and environment-sensitive mismatch classes.",
        "- `thresholds`: p95/p99 latency and error-rate limits for `portalcheck run`.",
        "- `load`: locust user classes, ramp stages and thresholds for `portalcheck load`.",
        "- `checks`: list of checks; each is one request or a list of `steps`.",
        "",
        "## Step keys",
    ]
    step_props = defs.get("StepConfig", {}).get("properties", {})
    for key in step_props:
        lines.append(f"- `{key}`")

    lines.append("")
    lines.append("## Mismatch classes")
    lines.append("- " + ", ".join(f"`{m.value}`" for m in MismatchClass))

    lines.append("")
    lines.append("## Assertions")
    lines.append("Every assertion also accepts `weight` and `mismatch_class`.")
    for model_name in ASSERTION_MODELS:
        props = defs.get(model_name, {}).get("properties", {})
        top_key = next(
            (k for k in props if k not in ("weight", "mismatch_class")), None
        )
        if top_key is None:
            continue
        spec_name = _SPEC_MODELS.get(top_key)
        if spec_name:
            fields = ", ".join(defs.get(spec_name, {}).get("properties", {}).keys())
            lines.append(f"- `{top_key}`: {{ {fields} }}")
        elif top_key == "header_present":
            lines.append(f"- `{top_key}`: string or list of strings (any one present)")
        elif top_key == "max_duration_ms":
            lines.append(f"- `{top_key}`: number")
        else:
            lines.append(f"- `{top_key}`: string")

    lines.append("")
    return "\n".join(lines)


def write_schema_doc(path: Path) -> None:
    _ensure_parent(path)
    path.write_text(generate_schema_doc())

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from junitparser import Error, Failure, JUnitXml, Skipped, TestCase, TestSuite


def write_junit(run_dir: Path, all_results: dict[str, dict[str, Any]]) -> Path:
    """Write junit.xml from aggregated results dict, return path."""
    xml = JUnitXml()

    for check_name, result in all_results.items():
        assertions = result.get("assertions", [])
        duration = result.get("duration", {})

        suite = TestSuite(check_name)
        suite.add_property("verdict", result["verdict"])
        suite.add_property("pass_rate", str(result.get("pass_rate")))
        for verdict, count in result.get("verdict_counts", {}).items():
            suite.add_property(f"count_{verdict}", str(count))
        for stat_name in ("avg", "stddev", "min", "max", "p95", "p99"):
            stat_val = duration.get(stat_name)
            if stat_val is not None:
                suite.add_property(f"duration_ms_{stat_name}", str(stat_val))

        # Check-level case carries what assertion cases cannot explain:
        # skips, probe execution errors and status mismatches.
        verdict_case = TestCase("verdict")
        verdict_case.classname = check_name
        message = result.get("message", "")
        failing = [a for a in assertions if not a.get("passed", True)]
        if result["verdict"] == "skip":
            verdict_case.result = Skipped(message)
        elif result["verdict"] == "error":
            verdict_case.result = Error(message)
        elif result["verdict"] == "fail" and not failing:
            verdict_case.result = Failure(message)
        suite.add_testcase(verdict_case)

        for assertion in assertions:
            case = TestCase(assertion["name"])
            case.classname = check_name
            if assertion.get("downgraded"):
                case.result = Skipped(f"outside CI: {assertion.get('message', '')}")
            elif not assertion.get("passed", True):
                case.result = Failure(assertion.get("message", ""))
            suite.add_testcase(case)

        # Set time after add_testcase (add_testcase resets it via update_statistics)
        suite.time = float(duration.get("avg") or 0.0) / 1000

        # Use append (not +=) to preserve properties and time
        xml.append(suite)

    junit_path = run_dir / "junit.xml"
    xml.write(str(junit_path), pretty=True)
    return junit_path


def has_failures(run_dir: Path) -> bool:
    xml = JUnitXml.fromfile(str(run_dir / "junit.xml"))
    return any(suite.failures > 0 or suite.errors > 0 for suite in xml)


def generate_report(run_dir: Path) -> Path:
    """Render junit.xml → report.html using Jinja2 template, return path."""
    import yaml
    from jinja2 import Environment, FileSystemLoader

    junit_path = run_dir / "junit.xml"
    report_path = run_dir / "report.html"

    meta: dict = {}
    meta_path = run_dir / "meta.yaml"
    if meta_path.exists():
        meta = yaml.safe_load(meta_path.read_text()) or {}

    xml = JUnitXml.fromfile(str(junit_path))

    suites = []
    for suite in xml:
        cases = []
        for case in suite:
            result = None
            if case.result:
                result = {
                    "status": type(case.result[0]).__name__,
                    "message": case.result[0].message or "",
                }
            cases.append({"name": case.name, "result": result})

        props = {p.name: p.value for p in suite.properties()}

        steps: list = []
        debug_log = ""
        iter_dir = run_dir / suite.name / "iter-0"
        outcome_path = iter_dir / "outcome.json"
        if outcome_path.exists():
            steps = json.loads(outcome_path.read_text(encoding="utf-8")).get("steps", [])
        debug_path = iter_dir / "debug.log"
        if debug_path.exists():
            debug_log = debug_path.read_text(encoding="utf-8")

        suites.append(
            {
                "name": suite.name,
                "verdict": props.get("verdict", "pass"),
                "tests": suite.tests,
                "failures": suite.failures,
                "errors": suite.errors,
                "skipped": suite.skipped,
                "time": suite.time,
                "properties": props,
                "cases": cases,
                "steps": steps,
                "debug_log": debug_log,
            }
        )

    totals = {
        verdict: sum(1 for s in suites if s["verdict"] == verdict)
        for verdict in ("pass", "skip", "fail", "error")
    }

    tmpl_dir = Path(__file__).parent / "templates"
    env = Environment(loader=FileSystemLoader(str(tmpl_dir)), autoescape=True)
    template = env.get_template("report.html.j2")

    html = template.render(
        suites=suites,
        totals=totals,
        total_checks=len(suites),
        run_dir=str(run_dir),
        meta=meta,
    )
    report_path.write_text(html, encoding="utf-8")
    return report_path

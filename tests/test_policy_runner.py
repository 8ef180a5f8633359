"""Tests for the conditional assertion runner's decision policy."""

import logging

import pytest

from portalcheck.config import PolicyConfig
from portalcheck.http import BatchResult
from portalcheck.probe import (
    Environment,
    MismatchClass,
    ProbeExecutionError,
    ProbeResult,
    Verdict,
)
from portalcheck.runner import ConditionalAssertionRunner, enforce


def _probe(status, expected=200, env=Environment.CI, **kwargs):
    kwargs.setdefault("context", "GET /benefits")
    return ProbeResult(status=status, expected_status=expected, environment=env, **kwargs)


# --- rule 1: 404 on an optional endpoint ---


def test_404_on_optional_endpoint_skips_with_warning(assertion_runner, caplog):
    with caplog.at_level(logging.WARNING):
        outcome = assertion_runner.evaluate(
            _probe(404, endpoint="/benefits"), [{"has_field": "data"}]
        )
    assert outcome.verdict == Verdict.SKIP
    assert outcome.passed
    assert outcome.assertions == []
    assert "GET /benefits" in caplog.text


def test_404_skip_applies_on_ci_and_local(assertion_runner):
    for env in Environment:
        outcome = assertion_runner.evaluate(_probe(404, env=env, endpoint="/forms/123"))
        assert outcome.verdict == Verdict.SKIP


def test_404_on_required_endpoint_fails(assertion_runner):
    outcome = assertion_runner.evaluate(_probe(404, endpoint="/veterans/current"))
    assert outcome.verdict == Verdict.FAIL
    assert "404" in outcome.message
    assert "200" in outcome.message
    assert "GET /benefits" in outcome.message


def test_optional_override_beats_policy(assertion_runner):
    outcome = assertion_runner.evaluate(
        _probe(404, endpoint="/benefits"), optional=False
    )
    assert outcome.verdict == Verdict.FAIL
    outcome = assertion_runner.evaluate(
        _probe(404, endpoint="/veterans/current"), optional=True
    )
    assert outcome.verdict == Verdict.SKIP


def test_expected_404_is_asserted_not_skipped(assertion_runner):
    probe = _probe(404, expected=404, endpoint="/forms/nonexistent", body={"errors": []})
    outcome = assertion_runner.evaluate(probe, [{"is_array": "errors"}])
    assert outcome.verdict == Verdict.PASS
    assert len(outcome.assertions) == 1


def test_optional_endpoint_glob_ignores_query_string():
    policy = PolicyConfig(optional_endpoints=["/facilities*"])
    assert policy.is_optional("/facilities/search?lat=38.9")
    assert not policy.is_optional("/veterans/current")


# --- rule 2: expected status, dependent assertions ---


def test_matched_status_runs_every_assertion(assertion_runner):
    probe = _probe(200, body={"meta": {}})
    outcome = assertion_runner.evaluate(
        probe, [{"has_field": "data"}, {"is_array": "data"}, {"has_field": "meta"}]
    )
    assert outcome.verdict == Verdict.FAIL
    assert len(outcome.assertions) == 3
    assert [a.name for a in outcome.failed_assertions] == [
        "has_field:data",
        "is_array:data",
    ]
    assert "has_field:data" in outcome.message


def test_matched_status_all_assertions_pass(assertion_runner):
    probe = _probe(200, body={"data": [{"id": 1}]})
    outcome = assertion_runner.evaluate(probe, [{"is_array": "data"}])
    assert outcome.verdict == Verdict.PASS
    assert outcome.status == 200


def test_env_sensitive_assertion_downgraded_locally(assertion_runner, caplog):
    probe = _probe(200, env=Environment.LOCAL, body={"data": []})
    with caplog.at_level(logging.WARNING):
        outcome = assertion_runner.evaluate(
            probe, [{"is_array": "data"}, {"header_present": "x-ratelimit-limit"}]
        )
    assert outcome.verdict == Verdict.PASS
    assert outcome.assertions[1].downgraded
    assert outcome.warnings
    assert "GET /benefits" in caplog.text


def test_downgraded_warnings_listed_for_counted_outcomes(assertion_runner):
    assertion_runner.evaluate(
        _probe(200, env=Environment.LOCAL, body={}),
        [{"header_present": "x-ratelimit-limit"}],
    )
    assertion_runner.evaluate(_probe(404, env=Environment.LOCAL, endpoint="/benefits"))
    warnings = assertion_runner.downgraded_warnings()
    assert len(warnings) == 1
    assert warnings[0].startswith("GET /benefits: ")
    assert "x-ratelimit-limit" in warnings[0]


def test_env_sensitive_assertion_fails_on_ci(assertion_runner):
    probe = _probe(200, env=Environment.CI, body={"data": []})
    outcome = assertion_runner.evaluate(probe, [{"header_present": "x-ratelimit-limit"}])
    assert outcome.verdict == Verdict.FAIL
    assert not outcome.assertions[0].downgraded


def test_status_class_assertion_never_downgraded(assertion_runner):
    probe = _probe(200, env=Environment.LOCAL, body={})
    outcome = assertion_runner.evaluate(probe, [{"has_field": "data"}])
    assert outcome.verdict == Verdict.FAIL


def test_invalid_assertion_becomes_failure_not_exception(assertion_runner):
    outcome = assertion_runner.evaluate(_probe(200, body={}), [{"status_is": 200}])
    assert outcome.verdict == Verdict.FAIL
    assert "could not be evaluated" in outcome.assertions[0].message


@pytest.mark.parametrize(
    "assertion",
    [{"has_field": 5}, {"field_equals": {"path": 1, "value": 1}}],
)
def test_malformed_assertion_becomes_failure_not_exception(assertion_runner, assertion):
    outcome = assertion_runner.evaluate(_probe(200, body={"data": []}), [assertion])
    assert outcome.verdict == Verdict.FAIL
    assert "could not be evaluated" in outcome.assertions[0].message


# --- rule 3 and 4: status mismatch ---


def test_local_env_sensitive_mismatch_skips(assertion_runner, caplog):
    probe = _probe(
        503, env=Environment.LOCAL, context="GET /analytics", mismatch_class=MismatchClass.THIRD_PARTY
    )
    with caplog.at_level(logging.WARNING):
        outcome = assertion_runner.evaluate(probe)
    assert outcome.verdict == Verdict.SKIP
    assert "GET /analytics" in caplog.text


def test_ci_env_sensitive_mismatch_fails(assertion_runner):
    probe = _probe(503, env=Environment.CI, mismatch_class=MismatchClass.THIRD_PARTY)
    assert assertion_runner.evaluate(probe).verdict == Verdict.FAIL


def test_local_status_mismatch_fails(assertion_runner):
    outcome = assertion_runner.evaluate(
        _probe(500, expected=[401, 403], env=Environment.LOCAL)
    )
    assert outcome.verdict == Verdict.FAIL
    assert "status 500, expected 401|403 (GET /benefits)" in outcome.message


# --- probe execution errors ---


def test_probe_execution_error_is_error_verdict(assertion_runner, caplog):
    err = ProbeExecutionError("GET /benefits", "timed out after 5s")
    with caplog.at_level(logging.ERROR):
        outcome = assertion_runner.error("GET /benefits", err)
    assert outcome.verdict == Verdict.ERROR
    assert not outcome.passed
    assert "timed out" in outcome.message
    assert "GET /benefits" in caplog.text


def test_probe_execution_error_not_downgraded_locally():
    runner = ConditionalAssertionRunner(
        PolicyConfig(environment="local", environment_sensitive=list(MismatchClass))
    )
    outcome = runner.error("GET /", ProbeExecutionError("GET /", "connection refused"))
    assert outcome.verdict == Verdict.ERROR


# --- batches ---


def _batch(statuses, headers=None, errors=()):
    probes = [
        ProbeResult(
            status=s,
            expected_status=200,
            context=f"GET /benefits x{len(statuses)} #{i}",
            headers=headers if s == 429 else {},
        )
        for i, s in enumerate(statuses)
    ]
    return BatchResult(
        context="GET /benefits x10",
        size=len(statuses) + len(errors),
        probes=probes,
        errors=list(errors),
    )


def test_batch_all_mode_requires_every_probe(assertion_runner):
    outcome = assertion_runner.evaluate_batch(
        _batch([200] * 4 + [500]), [200], require="all", endpoint="/veterans"
    )
    assert outcome.verdict == Verdict.FAIL
    assert "4 of 5" in outcome.message


def test_batch_all_mode_passes(assertion_runner):
    outcome = assertion_runner.evaluate_batch(_batch([200] * 5), [200], require="all")
    assert outcome.verdict == Verdict.PASS


def test_batch_any_mode_with_rate_limiting(assertion_runner):
    batch = _batch([200] * 8 + [429, 429], headers={"Retry-After": "30"})
    outcome = assertion_runner.evaluate_batch(batch, [200, 429], require="any")
    assert outcome.verdict == Verdict.PASS
    assert outcome.assertions[-1].name == "header_present:retry-after"
    assert outcome.assertions[-1].passed


def test_batch_429_without_retry_after_fails_on_ci(assertion_runner):
    batch = _batch([200, 429])
    outcome = assertion_runner.evaluate_batch(
        batch, [200, 429], require="any", environment=Environment.CI
    )
    assert outcome.verdict == Verdict.FAIL
    assert "lack retry-after" in outcome.message


def test_batch_429_without_retry_after_downgraded_locally(assertion_runner):
    outcome = assertion_runner.evaluate_batch(
        _batch([200, 429]), [200, 429], require="any", environment=Environment.LOCAL
    )
    assert outcome.verdict == Verdict.PASS
    assert outcome.warnings


def test_batch_all_404_on_optional_endpoint_skips(assertion_runner):
    outcome = assertion_runner.evaluate_batch(
        _batch([404] * 3), [200], endpoint="/benefits"
    )
    assert outcome.verdict == Verdict.SKIP


def test_batch_with_errors_is_error(assertion_runner):
    errors = [ProbeExecutionError("GET /benefits #3", "connection refused")]
    outcome = assertion_runner.evaluate_batch(_batch([200] * 4, errors=errors), [200])
    assert outcome.verdict == Verdict.ERROR
    assert "1/5" in outcome.message


# --- bookkeeping ---


def test_summary_counts_every_outcome(assertion_runner):
    assertion_runner.evaluate(_probe(200))
    assertion_runner.evaluate(_probe(404, endpoint="/benefits"))
    assertion_runner.evaluate(_probe(500))
    assert assertion_runner.summary() == {"pass": 1, "skip": 1, "fail": 1, "error": 0}
    assert assertion_runner.skipped_contexts() == ["GET /benefits"]


def test_enforce_maps_verdicts_to_pytest(assertion_runner):
    passed = assertion_runner.evaluate(_probe(200))
    assert enforce(passed) is passed

    with pytest.raises(pytest.skip.Exception):
        enforce(assertion_runner.evaluate(_probe(404, endpoint="/benefits")))

    with pytest.raises(pytest.fail.Exception):
        enforce(assertion_runner.evaluate(_probe(500)))

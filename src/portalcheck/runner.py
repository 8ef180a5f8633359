from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

import yaml
from pydantic import BaseModel

from portalcheck.assertions.base import AssertionResult
from portalcheck.assertions.structural import evaluate_assertion
from portalcheck.config import CheckConfig, PolicyConfig, StepConfig, SuiteConfig
from portalcheck.flow import FlowContext, MissingCaptureError
from portalcheck.http import ApiClient, BatchResult
from portalcheck.metrics import aggregate_outcomes, evaluate_thresholds
from portalcheck.probe import (
    NOT_FOUND,
    Environment,
    MismatchClass,
    ProbeExecutionError,
    ProbeResult,
    Verdict,
)
from portalcheck.verbose import close_logger, setup_logger

CheckName = str


@dataclass
class CheckOutcome:
    verdict: Verdict
    context: str
    message: str
    assertions: list[AssertionResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    status: int | None = None
    expected: str | None = None
    elapsed_ms: float | None = None
    steps: list[CheckOutcome] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True for pass and pass-by-skip."""
        return self.verdict in (Verdict.PASS, Verdict.SKIP)

    @property
    def failed_assertions(self) -> list[AssertionResult]:
        return [a for a in self.assertions if a.blocking]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["verdict"] = self.verdict.value
        for a in data["assertions"]:
            a["mismatch_class"] = MismatchClass(a["mismatch_class"]).value
        data["steps"] = [s.to_dict() for s in self.steps]
        return data


class ConditionalAssertionRunner:
    """Decides whether a probe outcome passes, fails, or is skipped.

    Precedence:
        1. 404 on an endpoint the policy marks optional (and 404 not expected)
           -> skip with a warning naming the context.
        2. status expected -> evaluate every dependent assertion; failures in
           an environment-sensitive class are downgraded on local runs.
        3. local run and the probe's mismatch class is environment-sensitive
           -> skip with a warning.
        4. otherwise fail, naming status, expected status and context.

    The runner never raises. Every outcome is recorded for the run summary.
    """

    def __init__(self, policy: PolicyConfig, logger: logging.Logger | None = None):
        self.policy = policy
        self.logger = logger or logging.getLogger(__name__)
        self.outcomes: list[CheckOutcome] = []
        self._lock = threading.Lock()

    def record(self, outcome: CheckOutcome) -> CheckOutcome:
        with self._lock:
            self.outcomes.append(outcome)
        return outcome

    def _skip(self, context: str, reason: str, **kwargs: Any) -> CheckOutcome:
        self.logger.warning(f"Skipping {context}: {reason}")
        return self.record(
            CheckOutcome(
                verdict=Verdict.SKIP, context=context, message=reason, **kwargs
            )
        )

    def _is_optional(self, endpoint: str, optional: bool | None) -> bool:
        if optional is not None:
            return optional
        return self.policy.is_optional(endpoint)

    def evaluate(
        self,
        probe: ProbeResult,
        assertions: Sequence[dict[str, Any] | BaseModel] = (),
        *,
        captured: FlowContext | None = None,
        optional: bool | None = None,
    ) -> CheckOutcome:
        context = probe.context
        observed = dict(
            status=probe.status,
            expected=probe.describe_expected(),
            elapsed_ms=probe.elapsed_ms,
        )

        if (
            probe.status == NOT_FOUND
            and NOT_FOUND not in probe.expected
            and self._is_optional(probe.endpoint or context, optional)
        ):
            return self._skip(context, "returned 404 Not Found", **observed)

        if probe.matched:
            results = [
                self._evaluate_one(probe, a, captured) for a in assertions
            ]
            warnings = self._downgrade(context, probe.environment, results)
            failed = [r for r in results if r.blocking]
            if failed:
                message = "; ".join(f"{r.name}: {r.message}" for r in failed)
                self.logger.info(f"FAIL {context}: {message}")
                verdict = Verdict.FAIL
            else:
                message = f"status {probe.status}, {len(results)} assertion(s) passed"
                self.logger.info(f"PASS {context}: {message}")
                verdict = Verdict.PASS
            return self.record(
                CheckOutcome(
                    verdict=verdict,
                    context=context,
                    message=message,
                    assertions=results,
                    warnings=warnings,
                    **observed,
                )
            )

        mismatch = (
            f"status {probe.status}, expected {probe.describe_expected()} ({context})"
        )
        if probe.environment == Environment.LOCAL and self.policy.is_environment_sensitive(
            probe.mismatch_class
        ):
            return self._skip(
                context,
                f"{probe.mismatch_class.value} mismatch tolerated outside CI: {mismatch}",
                **observed,
            )

        self.logger.info(f"FAIL {context}: {mismatch}")
        return self.record(
            CheckOutcome(
                verdict=Verdict.FAIL, context=context, message=mismatch, **observed
            )
        )

    def _evaluate_one(
        self,
        probe: ProbeResult,
        assertion: dict[str, Any] | BaseModel,
        captured: FlowContext | None,
    ) -> AssertionResult:
        try:
            return evaluate_assertion(
                probe, assertion, captured=captured, logger=self.logger
            )
        except (ValueError, KeyError, TypeError, re.error) as e:
            self.logger.error(f"{probe.context}: assertion {assertion!r} errored: {e}")
            return AssertionResult(
                name=f"invalid:{assertion!r}"[:120],
                passed=False,
                message=f"assertion could not be evaluated: {e}",
            )

    def _downgrade(
        self, context: str, environment: Environment, results: list[AssertionResult]
    ) -> list[str]:
        warnings = []
        if environment != Environment.LOCAL:
            return warnings
        for r in results:
            if not r.passed and self.policy.is_environment_sensitive(r.mismatch_class):
                r.downgraded = True
                warning = f"{r.name}: {r.message}"
                self.logger.warning(
                    f"Skipping assertion in {context} outside CI: {warning}"
                )
                warnings.append(warning)
        return warnings

    def error(self, context: str, exc: BaseException) -> CheckOutcome:
        """Record a probe that could not execute. Never downgraded."""
        reason = getattr(exc, "reason", None) or str(exc)
        self.logger.error(f"ERROR {context}: probe execution error: {reason}")
        return self.record(
            CheckOutcome(
                verdict=Verdict.ERROR,
                context=context,
                message=f"probe execution error: {reason}",
            )
        )

    def evaluate_batch(
        self,
        batch: BatchResult,
        expect_status: Iterable[int],
        *,
        require: str = "all",
        retry_after_on_429: bool = True,
        endpoint: str | None = None,
        environment: Environment = Environment.LOCAL,
        mismatch_class: MismatchClass = MismatchClass.STATUS,
        optional: bool | None = None,
    ) -> CheckOutcome:
        """Classify the aggregate behaviour of a batch of concurrent probes."""
        context = batch.context
        expected = frozenset(expect_status)
        if batch.errors:
            reasons = "; ".join(e.reason for e in batch.errors[:3])
            return self.error(
                context,
                ProbeExecutionError(
                    context,
                    f"{len(batch.errors)}/{batch.size} probe(s) did not complete: {reasons}",
                ),
            )

        statuses = batch.statuses
        matched = sum(1 for s in statuses if s in expected)
        summary = dict(sorted((s, statuses.count(s)) for s in set(statuses)))

        if (
            statuses
            and all(s == NOT_FOUND for s in statuses)
            and NOT_FOUND not in expected
            and self._is_optional(endpoint or context, optional)
        ):
            return self._skip(context, f"all {batch.size} probes returned 404 Not Found")

        if require == "all":
            aggregate_ok = matched == batch.size
            wanted = f"{batch.size}/{batch.size}"
        else:
            aggregate_ok = matched >= 1
            wanted = f">=1/{batch.size}"
        aggregate = AssertionResult(
            name=f"batch_{require}:{'|'.join(str(s) for s in sorted(expected))}",
            passed=aggregate_ok,
            message=f"{matched} of {batch.size} in expected set, wanted {wanted}; statuses {summary}",
            score=1.0 if aggregate_ok else 0.0,
        )

        if not aggregate_ok:
            probe = ProbeResult(
                status=next(s for s in statuses if s not in expected),
                expected_status=expected,
                context=context,
                environment=environment,
                endpoint=endpoint,
                mismatch_class=mismatch_class,
            )
            outcome = self.evaluate(probe, optional=False)
            outcome.assertions.append(aggregate)
            outcome.message = f"{outcome.message}; {aggregate.message}"
            return outcome

        results = [aggregate]
        if retry_after_on_429:
            limited = [p for p in batch.probes if p.status == 429]
            missing = sum(1 for p in limited if not p.headers.get("retry-after"))
            results.append(
                AssertionResult(
                    name="header_present:retry-after",
                    passed=missing == 0,
                    message=(
                        f"{len(limited)} rate-limited response(s) carry retry-after"
                        if missing == 0
                        else f"{missing} of {len(limited)} 429 response(s) lack retry-after"
                    ),
                    score=1.0 if missing == 0 else 0.0,
                    mismatch_class=MismatchClass.HEADER,
                )
            )
        warnings = self._downgrade(context, environment, results)
        failed = [r for r in results if r.blocking]
        verdict = Verdict.FAIL if failed else Verdict.PASS
        message = (
            "; ".join(f"{r.name}: {r.message}" for r in failed)
            if failed
            else aggregate.message
        )
        self.logger.info(f"{verdict.value.upper()} {context}: {message}")
        return self.record(
            CheckOutcome(
                verdict=verdict,
                context=context,
                message=message,
                assertions=results,
                warnings=warnings,
                expected="|".join(str(s) for s in sorted(expected)),
            )
        )

    def summary(self) -> dict[str, int]:
        with self._lock:
            counts = {v.value: 0 for v in Verdict}
            for o in self.outcomes:
                counts[o.verdict.value] += 1
        return counts

    def skipped_contexts(self) -> list[str]:
        with self._lock:
            return [o.context for o in self.outcomes if o.verdict == Verdict.SKIP]

    def downgraded_warnings(self) -> list[str]:
        """Assertion failures reported as warnings on outcomes that still counted."""
        with self._lock:
            return [
                f"{o.context}: {w}"
                for o in self.outcomes
                if o.verdict != Verdict.SKIP
                for w in o.warnings
            ]


def enforce(outcome: CheckOutcome) -> CheckOutcome:
    """Apply an outcome to the running pytest test."""
    import pytest

    if outcome.verdict == Verdict.SKIP:
        pytest.skip(f"{outcome.context}: {outcome.message}")
    if outcome.verdict in (Verdict.FAIL, Verdict.ERROR):
        pytest.fail(f"{outcome.context}: {outcome.message}", pytrace=False)
    return outcome


def run_check(
    check: CheckConfig,
    client: ApiClient,
    assertion_runner: ConditionalAssertionRunner,
    logger: logging.Logger | None = None,
) -> CheckOutcome:
    """Run every step of a check in order, carrying captures between steps."""
    logger = logger or logging.getLogger(__name__)
    flow = FlowContext()
    step_outcomes: list[CheckOutcome] = []
    # Keys a later step waits on with when_captured may legitimately be absent
    guarded = {s.when_captured for s in check.steps if s.when_captured}

    for step in check.steps:
        label = f"{check.name}: {step.label}"

        if step.when_captured and step.when_captured not in flow:
            logger.warning(
                f"Skipping {label}: nothing captured under '{step.when_captured}'"
            )
            break

        outcome, body = _run_step(step, label, flow, client, assertion_runner)
        step_outcomes.append(outcome)
        if outcome.verdict != Verdict.PASS:
            break

        if step.capture:
            unresolved = [k for k in flow.capture(body, step.capture) if k not in guarded]
            if unresolved:
                outcome.verdict = Verdict.FAIL
                outcome.message = (
                    f"could not capture {', '.join(unresolved)} from response"
                )
                logger.info(f"FAIL {label}: {outcome.message}")
                break
            logger.debug(f"Captured {flow!r}")

    return _combine(check.name, step_outcomes)


def _run_step(
    step: StepConfig,
    label: str,
    flow: FlowContext,
    client: ApiClient,
    assertion_runner: ConditionalAssertionRunner,
) -> tuple[CheckOutcome, Any]:
    """Run one step; return its outcome and the decoded body for captures."""
    try:
        path = flow.render(step.request.path)
    except MissingCaptureError as e:
        assertion_runner.logger.info(f"FAIL {label}: {e}")
        outcome = CheckOutcome(verdict=Verdict.FAIL, context=label, message=str(e))
        return assertion_runner.record(outcome), None

    expected = (
        [step.expect_status] if isinstance(step.expect_status, int) else step.expect_status
    )
    endpoint = step.endpoint or path

    try:
        if step.batch:
            batch = client.batch_probe(
                step.request,
                step.batch.size,
                expected,
                context=label,
                path=path,
                endpoint=endpoint,
                mismatch_class=step.mismatch_class,
            )
            outcome = assertion_runner.evaluate_batch(
                batch,
                expected,
                require=step.batch.require,
                retry_after_on_429=step.batch.retry_after_on_429,
                endpoint=endpoint,
                environment=client.environment,
                mismatch_class=step.mismatch_class,
                optional=step.optional,
            )
            return outcome, None

        probe = client.probe(
            step.request,
            expected,
            context=label,
            path=path,
            endpoint=endpoint,
            mismatch_class=step.mismatch_class,
        )
    except ProbeExecutionError as e:
        return assertion_runner.error(label, e), None

    outcome = assertion_runner.evaluate(
        probe, step.assertions, captured=flow, optional=step.optional
    )
    return outcome, probe.body


def _combine(name: str, steps: list[CheckOutcome]) -> CheckOutcome:
    """Fold step outcomes into one outcome for the check."""
    if not steps:
        return CheckOutcome(verdict=Verdict.SKIP, context=name, message="no step ran")

    decisive = next((s for s in steps if s.verdict != Verdict.PASS), steps[-1])
    assertions = [
        AssertionResult(
            name=f"{s.context} | {a.name}",
            passed=a.passed,
            message=a.message,
            score=a.score,
            weight=a.weight,
            mismatch_class=a.mismatch_class,
            downgraded=a.downgraded,
        )
        for s in steps
        for a in s.assertions
    ]
    return CheckOutcome(
        verdict=decisive.verdict,
        context=name,
        message=decisive.message,
        assertions=assertions,
        warnings=[w for s in steps for w in s.warnings],
        status=decisive.status,
        expected=decisive.expected,
        elapsed_ms=sum(s.elapsed_ms or 0.0 for s in steps) or None,
        steps=steps,
    )


class Runner:
    """Executes the declarative checks of a suite."""

    def __init__(
        self,
        config: SuiteConfig,
        output_dir: Path,
        check_filter: str | None = None,
        tag_filter: str | None = None,
        verbose: bool = False,
        parallel_checks: int = 1,
        repeat: int = 1,
        environment: Environment | None = None,
    ):
        self.config = config
        self.output_dir = output_dir
        self.check_filter = check_filter
        self.tag_filter = tag_filter
        self.verbose = verbose
        self.parallel_checks = parallel_checks
        self.repeat = repeat
        self.environment = environment or config.policy.resolve_environment()
        self.interrupted = False

    def selected_checks(self) -> list[CheckConfig]:
        checks = self.config.checks
        if self.check_filter:
            checks = [c for c in checks if c.name == self.check_filter]
        if self.tag_filter:
            checks = [c for c in checks if self.tag_filter in c.tags]
        if not checks:
            raise ValueError("no checks match the given filters")
        return checks

    def execute(self) -> Path:
        """Run all selected checks. Returns the run directory."""
        checks = self.selected_checks()
        run_id = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
        run_dir = self.output_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)

        logger = setup_logger(
            run_dir / "debug.log",
            verbose=self.verbose,
            logger_name=f"portalcheck_main_{run_id}_{id(self)}",
        )
        logger.debug(f"Starting run against {self.config.target.api_base_url}")
        logger.info(f"Environment: {self.environment.value}")

        assertion_runner = ConditionalAssertionRunner(self.config.policy, logger=logger)
        client = ApiClient(self.config.target, environment=self.environment, logger=logger)

        total = len(checks) * self.repeat
        print(
            f"Running {total} check(s) with parallelism {self.parallel_checks} ({self.environment.value})..."
        )

        iteration_outcomes: dict[CheckName, list[CheckOutcome]] = {
            c.name: [] for c in checks
        }
        try:
            with ThreadPoolExecutor(max_workers=self.parallel_checks) as executor:
                future_to_check = {}
                for check in checks:
                    for iteration in range(self.repeat):
                        future = executor.submit(
                            self._run_check,
                            check=check,
                            client=client,
                            run_dir=run_dir,
                            iteration=iteration,
                            run_logger=logger,
                            run_runner=assertion_runner,
                        )
                        future_to_check[future] = (check.name, iteration)

                completed = 0
                try:
                    for future in as_completed(future_to_check):
                        name, iteration = future_to_check[future]
                        outcome = future.result()
                        completed += 1
                        label = name if self.repeat == 1 else f"{name} iter-{iteration}"
                        print(
                            f"  [{completed}/{len(future_to_check)}] {outcome.verdict.value.upper():5}  {label}: {outcome.message}"
                        )
                        iteration_outcomes[name].append(outcome)
                except KeyboardInterrupt:
                    self.interrupted = True
                    logger.warning(
                        "Run interrupted by user (Ctrl+C). Cancelling pending checks, and saving partial results..."
                    )
                    cancelled = sum(1 for f in future_to_check if f.cancel())
                    logger.info(f"Cancelled {cancelled} pending check(s).")
                    for future, (name, _) in future_to_check.items():
                        if future.done() and not future.cancelled():
                            outcome = future.result(timeout=0)
                            if outcome not in iteration_outcomes[name]:
                                iteration_outcomes[name].append(outcome)
        finally:
            client.close()

        all_results = {
            name: aggregate_outcomes(outcomes).to_dict()
            for name, outcomes in iteration_outcomes.items()
            if outcomes
        }
        durations = [
            o.elapsed_ms
            for outcomes in iteration_outcomes.values()
            for o in outcomes
            if o.elapsed_ms is not None
        ]
        failures = sum(
            1
            for outcomes in iteration_outcomes.values()
            for o in outcomes
            if not o.passed
        )
        threshold_report = evaluate_thresholds(
            durations, failures, sum(len(v) for v in iteration_outcomes.values()),
            self.config.thresholds,
        )

        summary = assertion_runner.summary()
        logger.info(f"Run summary: {summary}")
        for context in assertion_runner.skipped_contexts():
            logger.info(f"Skipped: {context}")
        print(
            "Summary: "
            + ", ".join(f"{count} {verdict}" for verdict, count in summary.items())
        )
        for violation in threshold_report.violations:
            print(f"  THRESHOLD  {violation}")

        self._write_results(run_dir, all_results, checks, summary, threshold_report.to_dict())
        close_logger(logger)
        return run_dir

    def _run_check(
        self,
        check: CheckConfig,
        client: ApiClient,
        run_dir: Path,
        iteration: int,
        run_logger: logging.Logger,
        run_runner: ConditionalAssertionRunner,
    ) -> CheckOutcome:
        check_dir = run_dir / check.name / f"iter-{iteration}"
        check_logger = setup_logger(
            check_dir / "debug.log",
            verbose=self.verbose,
            logger_name=f"portalcheck_{run_dir.name}_{id(self)}_{check.name}_iter{iteration}",
        )
        runner = ConditionalAssertionRunner(self.config.policy, logger=check_logger)
        scoped = ApiClient(
            self.config.target,
            environment=self.environment,
            session=client.session,
            logger=check_logger,
        )
        try:
            outcome = run_check(check, scoped, runner, logger=check_logger)
        finally:
            close_logger(check_logger)
        run_runner.record(outcome)

        (check_dir / "outcome.json").write_text(
            json.dumps(outcome.to_dict(), indent=2, default=str)
        )
        run_logger.debug(
            f"Check '{check.name}' iter-{iteration}: {outcome.verdict.value} ({outcome.message})"
        )
        return outcome

    def _write_results(
        self,
        run_dir: Path,
        all_results: dict[str, dict[str, Any]],
        checks: list[CheckConfig],
        summary: dict[str, int],
        thresholds: dict[str, Any],
    ) -> None:
        """Write junit.xml and meta.yaml to the run directory."""
        from portalcheck.reporting.junit import write_junit

        write_junit(run_dir, all_results)

        try:
            import importlib.metadata

            version = importlib.metadata.version("portalcheck")
        except Exception:
            version = "unknown"

        meta: dict[str, Any] = {
            "run_id": run_dir.name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": self.environment.value,
            "api_base_url": self.config.target.api_base_url,
            "site_url": self.config.target.site_url,
            "checks": [c.name for c in checks],
            "summary": summary,
            "thresholds": thresholds,
            "portalcheck_version": version,
            "repeat": self.repeat,
        }
        if self.interrupted:
            meta["interrupted"] = True

        (run_dir / "meta.yaml").write_text(yaml.dump(meta, default_flow_style=False))

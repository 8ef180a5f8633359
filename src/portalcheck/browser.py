"""Browser probes: Playwright navigation and UI queries as ProbeResults."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable
from urllib.parse import urlparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator, Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from portalcheck.probe import (
    ABSENT,
    NOT_FOUND,
    PRESENT,
    Environment,
    MismatchClass,
    ProbeExecutionError,
    ProbeResult,
)

if TYPE_CHECKING:
    from portalcheck.runner import CheckOutcome, ConditionalAssertionRunner

DEFAULT_AXE_SCRIPT_URL = "https://cdnjs.cloudflare.com/ajax/libs/axe-core/4.10.2/axe.min.js"

# Sites often answer a missing page with 200 and a "not found" document
SOFT_404 = re.compile(r"page not found|\b404\b", re.IGNORECASE)

_AXE_RUN = """async (options) => {
    const results = await window.axe.run(document, options);
    return results.violations;
}"""

logger = logging.getLogger(__name__)


def axe_script_url() -> str:
    return os.environ.get("AXE_SCRIPT_URL", DEFAULT_AXE_SCRIPT_URL)


def navigate(
    page: Page,
    url: str,
    *,
    context: str | None = None,
    expect_status: int | Iterable[int] = 200,
    environment: Environment = Environment.LOCAL,
    endpoint: str | None = None,
    mismatch_class: MismatchClass = MismatchClass.STATUS,
    wait_until: str = "domcontentloaded",
    timeout_ms: float = 30_000,
    detect_soft_404: bool = True,
) -> ProbeResult:
    """Load ``url`` in ``page`` and report the document response as a probe.

    A document whose title reads like a not-found page is reported as 404 so
    the optional-endpoint policy applies to it.
    """
    context = context or f"GET {url}"
    endpoint = endpoint or urlparse(url).path or "/"

    start = time.perf_counter()
    try:
        response = page.goto(url, wait_until=wait_until, timeout=timeout_ms)  # type: ignore[arg-type]
    except PlaywrightTimeoutError as e:
        logger.error(f"{context}: navigation timed out after {timeout_ms:.0f}ms")
        raise ProbeExecutionError(
            context, f"navigation timed out after {timeout_ms:.0f}ms"
        ) from e
    except PlaywrightError as e:
        logger.error(f"{context}: navigation failed: {e}")
        raise ProbeExecutionError(context, f"navigation failed: {e}") from e
    elapsed_ms = (time.perf_counter() - start) * 1000

    if response is None:
        raise ProbeExecutionError(context, "navigation produced no document response")

    status = response.status
    if detect_soft_404 and status < 400 and SOFT_404.search(page.title()):
        logger.debug(f"{context}: title '{page.title()}' reads as a missing page")
        status = NOT_FOUND

    return ProbeResult(
        status=status,
        expected_status=expect_status,  # type: ignore[arg-type]
        context=context,
        environment=environment,
        endpoint=endpoint,
        mismatch_class=mismatch_class,
        headers=response.headers,
        elapsed_ms=elapsed_ms,
    )


def visit(
    page: Page,
    url: str,
    runner: ConditionalAssertionRunner,
    *,
    context: str,
    assertions: Iterable[dict[str, Any]] = (),
    **kwargs: Any,
) -> CheckOutcome:
    """Navigate and judge the document through ``runner``.

    A navigation that cannot execute is recorded as an error outcome.
    """
    try:
        probe = navigate(page, url, context=context, **kwargs)
    except ProbeExecutionError as e:
        return runner.error(context, e)
    return runner.evaluate(probe, list(assertions))


def ui_probe(
    locator: Locator,
    context: str,
    *,
    expect: int = PRESENT,
    environment: Environment = Environment.LOCAL,
    mismatch_class: MismatchClass = MismatchClass.RENDERING,
    timeout_ms: float = 5_000,
) -> ProbeResult:
    """Probe whether an affordance is visible: status PRESENT or ABSENT."""
    start = time.perf_counter()
    try:
        locator.first.wait_for(state="visible", timeout=timeout_ms)
        status = PRESENT
    except PlaywrightTimeoutError:
        status = ABSENT
    except PlaywrightError as e:
        raise ProbeExecutionError(context, f"UI query failed: {e}") from e

    return ProbeResult(
        status=status,
        expected_status=expect,
        context=context,
        environment=environment,
        mismatch_class=mismatch_class,
        elapsed_ms=(time.perf_counter() - start) * 1000,
    )


def condition_probe(
    context: str,
    holds: bool,
    *,
    environment: Environment = Environment.LOCAL,
    mismatch_class: MismatchClass = MismatchClass.RENDERING,
    body: Any = None,
) -> ProbeResult:
    """A page-level condition computed by the caller, as a PRESENT/ABSENT probe."""
    return ProbeResult(
        status=PRESENT if holds else ABSENT,
        expected_status=PRESENT,
        context=context,
        environment=environment,
        mismatch_class=mismatch_class,
        body=body,
    )


def run_axe(
    page: Page, rules: list[str] | None = None, context: str = "axe"
) -> list[dict[str, Any]]:
    """Inject axe-core into the page and return its violations.

    ``rules`` restricts the scan to the named rule ids (e.g. ``color-contrast``).
    """
    options: dict[str, Any] = {}
    if rules:
        options["runOnly"] = {"type": "rule", "values": rules}
    try:
        page.add_script_tag(url=axe_script_url())
        violations = page.evaluate(_AXE_RUN, options)
    except PlaywrightError as e:
        raise ProbeExecutionError(context, f"axe scan failed: {e}") from e
    logger.debug(f"{context}: axe reported {len(violations)} violation(s)")
    return violations


def describe_violations(violations: list[dict[str, Any]]) -> str:
    return "; ".join(
        f"{v.get('id')} ({v.get('impact') or 'n/a'}): {len(v.get('nodes', []))} node(s)"
        for v in violations
    )


def axe_probe(
    page: Page,
    context: str,
    *,
    rules: list[str] | None = None,
    environment: Environment = Environment.LOCAL,
) -> ProbeResult:
    """Accessibility scan as a probe: PRESENT means the page is clean.

    The violations are kept as the probe body.
    """
    violations = run_axe(page, rules=rules, context=context)
    return ProbeResult(
        status=ABSENT if violations else PRESENT,
        expected_status=PRESENT,
        context=context,
        environment=environment,
        body=violations,
    )


@dataclass
class ResponseLog:
    """Sub-resource responses seen by a page, recorded via ``page.on("response")``."""

    responses: list[tuple[str, int]] = field(default_factory=list)

    def attach(self, page: Page) -> ResponseLog:
        page.on("response", self.record)
        return self

    def record(self, response: Any) -> None:
        self.responses.append((response.url, response.status))

    def loaded(self, marker: str) -> bool:
        """True when some URL containing ``marker`` answered 200."""
        return any(marker in url and status == 200 for url, status in self.responses)

    def failed(self, ignore: Iterable[str] = ("analytics", "tracking")) -> list[str]:
        ignore = tuple(ignore)
        return [
            f"{status} - {url}"
            for url, status in self.responses
            if status >= 400 and not any(token in url for token in ignore)
        ]


@dataclass
class ConsoleLog:
    """Console errors emitted by a page."""

    errors: list[str] = field(default_factory=list)

    def attach(self, page: Page) -> ConsoleLog:
        page.on("console", self.record)
        return self

    def record(self, message: Any) -> None:
        if message.type == "error":
            self.errors.append(message.text)

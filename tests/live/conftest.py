"""Fixtures for the live suite: real target, one runner for the whole session."""

from __future__ import annotations

import logging

import pytest

from portalcheck.browser import visit as visit_page
from portalcheck.config import SuiteConfig, load_config, resolve_config_path
from portalcheck.http import ApiClient
from portalcheck.probe import Environment
from portalcheck.runner import ConditionalAssertionRunner, enforce

RUNNER_KEY = pytest.StashKey[ConditionalAssertionRunner]()


@pytest.fixture(scope="session")
def suite_config() -> SuiteConfig:
    return load_config(resolve_config_path())


@pytest.fixture(scope="session")
def environment(suite_config) -> Environment:
    return suite_config.policy.resolve_environment()


@pytest.fixture(scope="session")
def assertion_runner(request, suite_config) -> ConditionalAssertionRunner:
    runner = ConditionalAssertionRunner(
        suite_config.policy, logger=logging.getLogger("portalcheck.live")
    )
    request.config.stash[RUNNER_KEY] = runner
    return runner


@pytest.fixture(scope="session")
def client(suite_config, environment):
    with ApiClient(suite_config.target, environment=environment) as api:
        yield api


@pytest.fixture(scope="session")
def site_url(suite_config) -> str:
    return suite_config.target.site_url


@pytest.fixture
def visit(environment, assertion_runner):
    """Navigate a page and judge its document status through the session runner.

    Navigation errors are recorded as error outcomes before the test fails.
    """

    def _visit(page, url, context, endpoint, assertions=(), **kwargs):
        outcome = visit_page(
            page,
            url,
            assertion_runner,
            context=context,
            assertions=assertions,
            environment=environment,
            endpoint=endpoint,
            **kwargs,
        )
        return enforce(outcome)

    return _visit


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    runner = config.stash.get(RUNNER_KEY, None)
    if runner is None:
        return
    counts = runner.summary()
    terminalreporter.section("portalcheck")
    terminalreporter.write_line(
        ", ".join(f"{count} {verdict}" for verdict, count in counts.items())
    )
    for context in runner.skipped_contexts():
        terminalreporter.write_line(f"skipped: {context}")
    for warning in runner.downgraded_warnings():
        terminalreporter.write_line(f"warning: {warning}")

"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from portalcheck.config import PolicyConfig, TargetConfig
from portalcheck.runner import ConditionalAssertionRunner

LIVE_DIR = Path(__file__).parent / "live"


def pytest_addoption(parser):
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests/live against the real portal and APIs",
    )


def _live_enabled(config) -> bool:
    flag = os.environ.get("PORTALCHECK_LIVE", "").strip().lower()
    return config.getoption("--live") or flag in {"1", "true", "yes"}


def pytest_ignore_collect(collection_path, config):
    # The live suite needs network access and browsers; collect it on request only
    if LIVE_DIR in (collection_path, *collection_path.parents):
        return not _live_enabled(config)
    return None


@pytest.fixture(autouse=True)
def cleanup_loggers():
    """Clean up per-run portalcheck loggers after each test to prevent name collisions."""
    yield

    loggers_to_remove = [
        name
        for name in logging.Logger.manager.loggerDict.keys()
        if name.startswith("portalcheck_")
    ]

    for name in loggers_to_remove:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        del logging.Logger.manager.loggerDict[name]


@pytest.fixture
def make_response():
    """Factory for real requests.Response objects with a canned payload."""

    def _make(
        status: int = 200,
        json_body=None,
        text: str | None = None,
        headers: dict | None = None,
        url: str = "https://api.va.gov/v1/benefits",
    ) -> requests.Response:
        response = requests.Response()
        response.status_code = status
        response.url = url
        response.encoding = "utf-8"
        response.headers = CaseInsensitiveDict(headers or {})
        if json_body is not None:
            response._content = json.dumps(json_body).encode("utf-8")
            response.headers.setdefault("Content-Type", "application/json")
        elif text is not None:
            response._content = text.encode("utf-8")
        else:
            response._content = b""
        return response

    return _make


@pytest.fixture
def target() -> TargetConfig:
    return TargetConfig(
        api_base_url="https://api.example.test/v1",
        api_root_url="https://api.example.test",
        site_url="https://portal.example.test",
        api_key="secret-key",
        timeout=5,
    )


@pytest.fixture
def policy() -> PolicyConfig:
    return PolicyConfig(optional_endpoints=["/benefits*", "/forms*"])


@pytest.fixture
def assertion_runner(policy) -> ConditionalAssertionRunner:
    return ConditionalAssertionRunner(policy, logger=logging.getLogger("tests.runner"))

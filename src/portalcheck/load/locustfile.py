"""Locust scenarios for the portal and its APIs.

Run through ``portalcheck load``; the suite file named by PORTALCHECK_CONFIG
(or the packaged default) supplies hosts, credentials, stages and thresholds.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from locust import HttpUser, LoadTestShape, between, events, tag, task

from portalcheck.config import load_config, load_default_config
from portalcheck.load.shape import SHAPE_ENV, stage_at
from portalcheck.metrics import evaluate_thresholds

logger = logging.getLogger(__name__)

_config_path = os.environ.get("PORTALCHECK_CONFIG")
CONFIG = load_config(Path(_config_path)) if _config_path else load_default_config()
TARGET = CONFIG.target


class _Samples:
    durations_ms: list[float] = []
    failures = 0
    total = 0


@events.request.add_listener
def record_request(request_type, name, response_time, response_length, exception=None, **kwargs):
    _Samples.total += 1
    _Samples.durations_ms.append(response_time)
    if exception is not None:
        _Samples.failures += 1


@events.quitting.add_listener
def enforce_thresholds(environment, **kwargs):
    report = evaluate_thresholds(
        _Samples.durations_ms, _Samples.failures, _Samples.total, CONFIG.load.thresholds
    )
    stats = report.stats
    error_rate = f"{report.error_rate:.2%}" if report.error_rate is not None else "n/a"
    logger.info(
        "Load test summary\n"
        f"  Total requests: {_Samples.total}\n"
        f"  Failed: {_Samples.failures} ({error_rate})\n"
        f"  Avg: {stats.avg}ms  Min: {stats.min}ms  Max: {stats.max}ms\n"
        f"  p95: {stats.p95}ms  p99: {stats.p99}ms\n"
        f"  Thresholds: {'PASSED' if report.ok else 'FAILED'}"
    )
    for violation in report.violations:
        logger.error(f"Threshold violated: {violation}")
    if not report.ok:
        environment.process_exit_code = 1


class PortalUser(HttpUser):
    """Anonymous visitor browsing digital.va.gov."""

    host = TARGET.site_url
    wait_time = between(1, 2)

    @tag("portal")
    @task(3)
    def homepage(self):
        with self.client.get("/", name="Homepage", catch_response=True) as response:
            if response.status_code != 200:
                response.failure(f"status {response.status_code}")
            elif response.elapsed.total_seconds() > 2:
                response.failure("homepage slower than 2s")
            elif not response.content:
                response.failure("empty homepage")

    @tag("portal")
    @task
    def sign_in(self):
        payload = {"email": f"test{uuid.uuid4().hex[:8]}@va.gov", "password": "test-password"}
        with self.client.post(
            "/sign-in", json=payload, name="Login", catch_response=True
        ) as response:
            # Rejected credentials are the expected answer; only server errors count
            if response.status_code >= 500:
                response.failure(f"status {response.status_code}")
            else:
                response.success()

    @tag("portal")
    @task
    def static_resources(self):
        for path in ("/api/config", "/api/health", "/api/status"):
            with self.client.get(path, name="Resource", catch_response=True) as response:
                if not 200 <= response.status_code < 300:
                    response.failure(f"{path}: status {response.status_code}")

    @tag("portal")
    @task(2)
    def resource_pages(self):
        for path in (
            "/resources/lighthouse-api",
            "/resources/mobile-hub",
            "/resources/accessibility",
        ):
            with self.client.get(path, name="ResourcePage", catch_response=True) as response:
                if response.status_code in (200, 304):
                    response.success()
                else:
                    response.failure(f"{path}: status {response.status_code}")


class ApiUser(HttpUser):
    """API consumer calling api.va.gov with a bearer key."""

    host = TARGET.api_base_url
    wait_time = between(1, 2)

    def on_start(self):
        self.client.headers.update(
            {"Authorization": f"Bearer {TARGET.api_key}", "Accept": "application/json"}
        )

    @tag("api")
    @task(3)
    def benefits(self):
        with self.client.get("/benefits", name="BenefitsAPI", catch_response=True) as response:
            if response.status_code != 200:
                response.failure(f"status {response.status_code}")
            elif "data" not in response.text:
                response.failure("no data in body")

    @tag("api")
    @task(2)
    def health_records(self):
        with self.client.get("/health-records", name="HealthAPI", catch_response=True) as response:
            if not 200 <= response.status_code < 300:
                response.failure(f"status {response.status_code}")

    @tag("api")
    @task(2)
    def facility_search(self):
        with self.client.get(
            "/facilities/search",
            params={"lat": 38.9, "lon": -77.0, "distance": 10},
            name="FacilitiesSearch",
            catch_response=True,
        ) as response:
            if response.status_code in (200, 400, 404):
                response.success()
            else:
                response.failure(f"status {response.status_code}")

    @tag("api")
    @task(2)
    def forms(self):
        with self.client.get("/forms", name="FormsAPI", catch_response=True) as response:
            if response.status_code != 200:
                response.failure(f"status {response.status_code}")

    @tag("api")
    @task
    def appeals(self):
        with self.client.get("/appeals", name="AppealsAPI", catch_response=True) as response:
            if response.status_code >= 500:
                response.failure(f"status {response.status_code}")
            else:
                response.success()

    @tag("api")
    @task
    def veterans(self):
        with self.client.get(
            f"{TARGET.api_root_url}/v1/veterans",
            headers={"apikey": TARGET.api_key},
            name="VeteransAPI",
            catch_response=True,
        ) as response:
            if response.status_code >= 400:
                response.failure(f"status {response.status_code}")
            elif "x-request-id" not in response.headers:
                response.failure("missing x-request-id")

    @tag("api", "rate-limit")
    @task
    def rate_limit_burst(self):
        for i in range(15):
            with self.client.get(
                "/benefits", name="RateLimitTest", catch_response=True
            ) as response:
                if response.status_code == 429:
                    logger.info(f"Rate limited at request {i}")
                    response.success()
                    break
                if response.status_code >= 500:
                    response.failure(f"status {response.status_code}")
                else:
                    response.success()


if os.environ.get(SHAPE_ENV, "1") != "0":

    class StagesShape(LoadTestShape):
        """Ramp through the configured stages, then stop."""

        stages = CONFIG.load.stages

        def tick(self):
            return stage_at(self.stages, self.get_run_time())

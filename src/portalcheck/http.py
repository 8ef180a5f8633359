"""HTTP probes: one bounded request in, one ProbeResult out."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Iterable

import requests

from portalcheck.config import RequestSpec, TargetConfig
from portalcheck.probe import (
    Environment,
    MismatchClass,
    ProbeExecutionError,
    ProbeResult,
)

USER_AGENT = "portalcheck"


@dataclass
class BatchResult:
    """Responses of N identical probes issued concurrently.

    Probes are collected in completion order; no ordering is implied.
    """

    context: str
    size: int
    probes: list[ProbeResult] = field(default_factory=list)
    errors: list[ProbeExecutionError] = field(default_factory=list)

    @property
    def statuses(self) -> list[int]:
        return [p.status for p in self.probes]


class ApiClient:
    """Issues probes against the configured target.

    Every request carries ``target.timeout``; connection failures and timeouts
    become ProbeExecutionError rather than a status mismatch.
    """

    def __init__(
        self,
        target: TargetConfig,
        environment: Environment = Environment.LOCAL,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ):
        self.target = target
        self.environment = environment
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.logger = logger or logging.getLogger(__name__)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def url_for(self, spec: RequestSpec, path: str | None = None) -> str:
        base = {
            "api": self.target.api_base_url,
            "root": self.target.api_root_url,
            "site": self.target.site_url,
        }[spec.base]
        path = spec.path if path is None else path
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return base + path

    def build_headers(self, spec: RequestSpec) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if spec.auth == "bearer":
            headers["Authorization"] = f"Bearer {self.target.api_key}"
        elif spec.auth == "apikey":
            headers["apikey"] = self.target.api_key
        elif spec.auth == "invalid":
            headers["Authorization"] = f"Bearer {self.target.invalid_api_key}"
        headers.update(spec.headers)
        return headers

    def send(
        self, spec: RequestSpec, *, path: str | None = None, context: str | None = None
    ) -> tuple[requests.Response, float]:
        """Send one request; return the response and its duration in milliseconds."""
        url = self.url_for(spec, path)
        context = context or f"{spec.method} {path or spec.path}"
        self.logger.debug(f"{spec.method} {url}")

        start = time.perf_counter()
        try:
            response = self.session.request(
                spec.method,
                url,
                headers=self.build_headers(spec),
                params=spec.params or None,
                json=spec.json_body,
                timeout=self.target.timeout,
                allow_redirects=True,
            )
        except requests.Timeout as e:
            self.logger.error(f"{context}: timed out after {self.target.timeout}s")
            raise ProbeExecutionError(
                context, f"timed out after {self.target.timeout}s"
            ) from e
        except requests.RequestException as e:
            self.logger.error(f"{context}: request failed: {e}")
            raise ProbeExecutionError(context, f"request failed: {e}") from e
        elapsed_ms = (time.perf_counter() - start) * 1000

        self.logger.debug(
            f"{spec.method} {url} -> {response.status_code} in {elapsed_ms:.0f}ms"
        )
        return response, elapsed_ms

    def probe(
        self,
        spec: RequestSpec,
        expect_status: int | Iterable[int],
        *,
        context: str | None = None,
        path: str | None = None,
        endpoint: str | None = None,
        mismatch_class: MismatchClass = MismatchClass.STATUS,
    ) -> ProbeResult:
        """Issue one request and wrap what came back."""
        path = spec.path if path is None else path
        context = context or f"{spec.method} {path}"
        response, elapsed_ms = self.send(spec, path=path, context=context)
        return ProbeResult(
            status=response.status_code,
            expected_status=expect_status,  # type: ignore[arg-type]
            context=context,
            environment=self.environment,
            endpoint=endpoint or path,
            mismatch_class=mismatch_class,
            body=decode_body(response, context, required=spec.expect_json),
            headers=response.headers,
            elapsed_ms=elapsed_ms,
        )

    def batch_probe(
        self,
        spec: RequestSpec,
        size: int,
        expect_status: int | Iterable[int],
        *,
        context: str | None = None,
        path: str | None = None,
        endpoint: str | None = None,
        mismatch_class: MismatchClass = MismatchClass.STATUS,
    ) -> BatchResult:
        """Issue ``size`` identical probes concurrently and wait for all of them."""
        path = spec.path if path is None else path
        context = context or f"{spec.method} {path} x{size}"
        batch = BatchResult(context=context, size=size)
        self.logger.info(f"Issuing batch of {size} probes: {context}")

        with ThreadPoolExecutor(max_workers=size) as executor:
            futures = [
                executor.submit(
                    self.probe,
                    spec,
                    expect_status,
                    context=f"{context} #{i}",
                    path=path,
                    endpoint=endpoint or path,
                    mismatch_class=mismatch_class,
                )
                for i in range(size)
            ]
            for future in as_completed(futures):
                try:
                    batch.probes.append(future.result())
                except ProbeExecutionError as e:
                    batch.errors.append(e)

        self.logger.info(
            f"Batch {context} complete: statuses={sorted(batch.statuses)} errors={len(batch.errors)}"
        )
        return batch


def decode_body(response: requests.Response, context: str, required: bool = False) -> Any:
    """Return the JSON body when there is one, otherwise the text.

    With ``required`` a body that is not valid JSON is a probe execution error.
    """
    content_type = response.headers.get("content-type", "")
    if not response.content:
        if required:
            raise ProbeExecutionError(context, "empty body where JSON was required")
        return None
    if "json" in content_type or required:
        try:
            return response.json()
        except ValueError as e:
            if required:
                raise ProbeExecutionError(context, f"invalid JSON body: {e}") from e
    return response.text

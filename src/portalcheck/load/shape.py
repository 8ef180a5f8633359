"""Staged ramp schedule and the locust command line, free of locust imports.

Locust patches the standard library on import, so nothing here imports it;
the CLI and the unit tests use these helpers directly.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Sequence

from portalcheck.config import LoadStage

LOCUSTFILE = Path(__file__).parent / "locustfile.py"

# Set to "0" to run with fixed --users/--spawn-rate instead of the stages
SHAPE_ENV = "PORTALCHECK_LOAD_SHAPE"


def stage_at(stages: Sequence[LoadStage], run_time: float) -> tuple[int, float] | None:
    """Return ``(users, spawn_rate)`` for the stage active at ``run_time`` seconds.

    Each stage ramps linearly from the previous stage's user count to its own
    over its duration, so the spawn rate is the user delta per second (at
    least 1). Returns None once every stage has elapsed.
    """
    elapsed = 0
    previous_users = 0
    for stage in stages:
        elapsed += stage.duration
        if run_time < elapsed:
            rate = stage.spawn_rate or max(
                1.0, abs(stage.users - previous_users) / stage.duration
            )
            return stage.users, rate
        previous_users = stage.users
    return None


def build_locust_command(
    config_path: Path | None,
    user_classes: Sequence[str],
    *,
    host: str | None = None,
    users: int | None = None,
    spawn_rate: float | None = None,
    run_time: str | None = None,
    csv_prefix: Path | None = None,
    html_report: Path | None = None,
) -> tuple[list[str], dict[str, str]]:
    """Build the headless locust invocation and the extra environment it needs."""
    # Request failures count through the error-rate threshold, not locust's default
    cmd = [
        sys.executable,
        "-m",
        "locust",
        "-f",
        str(LOCUSTFILE),
        "--headless",
        "--exit-code-on-error",
        "0",
    ]
    env: dict[str, str] = {}
    if config_path is not None:
        env["PORTALCHECK_CONFIG"] = str(config_path)
    if host:
        cmd += ["--host", host]
    if users is not None:
        env[SHAPE_ENV] = "0"
        cmd += ["--users", str(users), "--spawn-rate", f"{spawn_rate or 1:g}"]
    if run_time:
        cmd += ["--run-time", run_time]
    if csv_prefix is not None:
        cmd += ["--csv", str(csv_prefix)]
    if html_report is not None:
        cmd += ["--html", str(html_report)]
    cmd += list(user_classes)
    return cmd, env

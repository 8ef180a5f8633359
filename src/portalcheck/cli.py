from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import typer

app = typer.Typer(name="portalcheck", help="Test the portal and its APIs")
schema_app = typer.Typer(name="schema", help="Generate schema tooling")
app.add_typer(schema_app, name="schema")


@app.command()
def run(
    config: str | None = typer.Argument(
        None, help="Path to suite YAML config (defaults to the bundled portal suite)"
    ),
    check: str | None = typer.Option(None, help="Run only this check"),
    tag: str | None = typer.Option(None, help="Run only checks with this tag"),
    output_dir: str = typer.Option("runs", help="Output directory for run results"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output to terminal"
    ),
    parallel: int = typer.Option(
        1, "--parallel", "-p", min=1, max=100, help="Number of checks to run concurrently"
    ),
    repeat: int = typer.Option(
        1, "--repeat", "-r", min=1, max=100, help="Number of times to repeat each check"
    ),
    environment: str | None = typer.Option(
        None,
        "--environment",
        "-e",
        help="Force 'ci' or 'local' instead of detecting it from $CI",
    ),
    no_open: bool = typer.Option(
        False, "--no-open", help="Do not open report.html in browser after run"
    ),
):
    """Run the checks of a suite against the configured target."""
    from portalcheck.config import load_config, resolve_config_path
    from portalcheck.probe import Environment
    from portalcheck.reporting.junit import generate_report, has_failures
    from portalcheck.runner import Runner

    config_path = resolve_config_path(config)
    if not config_path.exists():
        typer.echo(f"Error: config file not found: {config_path}", err=True)
        raise typer.Exit(1)

    try:
        env = Environment(environment) if environment else None
    except ValueError:
        typer.echo(
            f"Error: unknown environment '{environment}' (use ci or local)", err=True
        )
        raise typer.Exit(1)

    try:
        suite = load_config(config_path)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    runner = Runner(
        config=suite,
        output_dir=Path(output_dir),
        check_filter=check,
        tag_filter=tag,
        verbose=verbose,
        parallel_checks=parallel,
        repeat=repeat,
        environment=env,
    )

    try:
        run_dir = runner.execute()
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if runner.interrupted:
        typer.echo("Run interrupted. Saving partial results...")

    typer.echo("Generating report...")
    report_path = generate_report(run_dir)

    if runner.interrupted:
        typer.echo(f"Partial run saved: {run_dir}")
    else:
        typer.echo(f"Run complete: {run_dir}")
    typer.echo(f"Report: {report_path}")
    if not verbose:
        typer.echo(f"Debug log: {run_dir / 'debug.log'}")

    if not no_open:
        import webbrowser

        webbrowser.open(report_path.resolve().as_uri())

    # Skips are passes; failures, probe errors and interruptions are not
    if runner.interrupted or has_failures(run_dir):
        raise typer.Exit(1)


@app.command()
def report(
    run_dir: str = typer.Argument(help="Path to run output directory"),
    open_report: bool = typer.Option(
        False, "--open", help="Open report.html in browser after generating"
    ),
):
    """Regenerate HTML report from a previous run."""
    from portalcheck.reporting.junit import generate_report

    run_path = Path(run_dir)
    if not run_path.exists() or not (run_path / "junit.xml").exists():
        typer.echo(f"Error: not a valid run directory: {run_dir}", err=True)
        raise typer.Exit(1)

    report_path = generate_report(run_path)
    typer.echo(f"Report generated: {report_path}")

    if open_report:
        import webbrowser

        webbrowser.open(report_path.resolve().as_uri())


@app.command()
def init(
    dir: str = typer.Option(
        ".", "--dir", help="Directory to write portalcheck.yaml and .env into"
    ),
):
    """Start a project from the bundled portal suite."""
    from portalcheck.config import DEFAULT_SUITE

    project_dir = Path(dir)
    project_dir.mkdir(parents=True, exist_ok=True)

    suite = project_dir / "portalcheck.yaml"
    if suite.exists():
        typer.echo(f"portalcheck.yaml already exists in {dir}, skipping.")
        return
    shutil.copyfile(DEFAULT_SUITE, suite)

    env_file = project_dir / ".env"
    wrote_env = False
    if not env_file.exists():
        env_file.write_text(
            "# Loaded by portalcheck; variables already set in the shell win.\n"
            "VA_API_URL=https://api.va.gov/v1\n"
            "VA_API_ROOT=https://api.va.gov\n"
            "BASE_URL=https://digital.va.gov\n"
            "VA_API_KEY=test-key\n"
        )
        wrote_env = True

    typer.echo(f"Initialized portalcheck project in {dir}:")
    typer.echo("  portalcheck.yaml - portal suite config")
    if wrote_env:
        typer.echo("  .env             - target URLs and API key")


@app.command()
def load(
    config: str | None = typer.Option(
        None, "--config", "-c", help="Suite YAML config (defaults to $PORTALCHECK_CONFIG or the bundled suite)"
    ),
    users: int | None = typer.Option(
        None, "--users", "-u", min=1, help="Fixed user count instead of the configured stages"
    ),
    spawn_rate: float | None = typer.Option(
        None, "--spawn-rate", help="Users started per second with --users"
    ),
    run_time: str | None = typer.Option(
        None, "--run-time", help="Stop after this long, e.g. 90s or 2m"
    ),
    host: str | None = typer.Option(None, "--host", help="Override every user's host"),
    output_dir: str = typer.Option("runs", help="Directory for CSV and HTML stats"),
):
    """Run the locust load test headless and enforce its thresholds."""
    from datetime import datetime, timezone

    from portalcheck.config import load_config, resolve_config_path
    from portalcheck.load.shape import build_locust_command

    config_path = resolve_config_path(config)
    if not config_path.exists():
        typer.echo(f"Error: config file not found: {config_path}", err=True)
        raise typer.Exit(1)
    try:
        suite = load_config(config_path)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    run_dir = (
        Path(output_dir)
        / f"load-{datetime.now(timezone.utc).strftime('%Y-%m-%d_%H%M%S')}"
    )
    run_dir.mkdir(parents=True, exist_ok=True)

    cmd, extra_env = build_locust_command(
        config_path.resolve(),
        suite.load.user_classes,
        host=host,
        users=users,
        spawn_rate=spawn_rate,
        run_time=run_time,
        csv_prefix=run_dir / "stats",
        html_report=run_dir / "load.html",
    )
    if users is None:
        typer.echo(
            f"Running {len(suite.load.stages)} stage(s) over {suite.load.total_seconds}s "
            f"with {', '.join(suite.load.user_classes)}..."
        )
    else:
        typer.echo(f"Running {users} user(s) with {', '.join(suite.load.user_classes)}...")

    try:
        result = subprocess.run(cmd, env={**os.environ, **extra_env})
    except FileNotFoundError as e:
        typer.echo(f"Error: could not start locust: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Load stats: {run_dir}")
    if result.returncode != 0:
        typer.echo(f"Load test exited with status {result.returncode}", err=True)
        raise typer.Exit(result.returncode)


@schema_app.command("generate")
def schema_generate(
    dir: str = typer.Option(
        ".", "--dir", help="Project directory for default schema/doc outputs"
    ),
    out: str | None = typer.Option(
        None,
        help="Output path for JSON Schema (defaults to <dir>/schemas/portalcheck.schema.json)",
    ),
    doc: str | None = typer.Option(
        None, help="Output path for schema docs (defaults to <dir>/docs/schema.md)"
    ),
):
    """Generate JSON Schema and docs for the suite YAML format."""
    from portalcheck.schema import write_json_schema, write_schema_doc

    project_dir = Path(dir)
    out_path = (
        Path(out)
        if out is not None
        else project_dir / "schemas" / "portalcheck.schema.json"
    )
    doc_path = Path(doc) if doc is not None else project_dir / "docs" / "schema.md"
    write_json_schema(out_path)
    write_schema_doc(doc_path)
    typer.echo(f"Wrote schema: {out_path}")
    typer.echo(f"Wrote docs: {doc_path}")

import json
import logging
import os
from typing import Optional

import typer

from tokenmeter.database import init_db as create_tables
from tokenmeter.metering.config import load_metering_config
from tokenmeter.metering.loaders import YamlDirectoryLoader, write_directory_to_database
from tokenmeter.metering.metrics import get_metrics_summary
from tokenmeter.metering.service import get_token_stats_service

app = typer.Typer(help="Token metering and quota management CLI")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init-db")
def init_db():
    """
    Create the directory and usage tables.
    """
    create_tables()
    typer.echo("✅ Database tables created")


@app.command()
def seed(path: str = typer.Argument(..., help="Path to a directory seed YAML file")):
    """
    Write providers, models and quotas from a YAML seed file into the database.
    """
    if not os.path.exists(path):
        typer.echo(f"Error: File {path} not found.")
        raise typer.Exit(code=1)

    try:
        data = YamlDirectoryLoader(path).load()
        create_tables()
        counts = write_directory_to_database(data)
    except Exception as e:
        typer.echo(f"❌ Seeding failed: {e}")
        raise typer.Exit(code=1)

    typer.echo(
        f"✅ Seeded {counts['providers']} providers, {counts['models']} models, {counts['quotas']} quotas"
    )


@app.command()
def check(
    provider: str = typer.Argument(..., help="Provider name, alias or provider:model"),
    model: Optional[str] = typer.Argument(None, help="Model name (omit when using provider:model)"),
    tokens: int = typer.Option(0, "--tokens", "-t", help="Estimated tokens for the request"),
):
    """
    Run a quota check without recording any usage.
    """
    if tokens < 0:
        typer.echo("Error: --tokens must be non-negative.")
        raise typer.Exit(code=2)

    service = get_token_stats_service()
    result = service.check_quota(provider, model, tokens)

    typer.echo(json.dumps(result.as_dict(), indent=2))
    if not result.allowed:
        raise typer.Exit(code=1)


@app.command()
def report(
    provider: str = typer.Argument(..., help="Provider name, alias or provider:model"),
    model: Optional[str] = typer.Argument(None, help="Model name (omit when using provider:model)"),
    history: bool = typer.Option(False, help="Include durable daily totals"),
):
    """
    Show quota, current window usage and headroom for a model.
    """
    service = get_token_stats_service()
    identity = service.directory.resolve(provider, model)
    if identity is None:
        typer.echo(f"Error: no active model for {provider!r} {model or ''}".rstrip())
        raise typer.Exit(code=1)

    output = service.get_usage_report(provider, model).as_dict()
    output["provider"] = identity.provider_name
    output["model"] = identity.model_name

    if history and service.recorder is not None:
        output["history"] = service.recorder.usage_summary(identity.provider_id, identity.model_id)

    typer.echo(json.dumps(output, indent=2, default=str))


@app.command()
def metrics():
    """
    Display in-process metering metrics.
    """
    typer.echo(json.dumps(get_metrics_summary(), indent=2, default=str))


@app.command()
def status():
    """
    Display the active metering configuration.
    """
    config = load_metering_config()

    typer.echo(f"Metering: {'ENABLED' if config.enabled else 'DISABLED'}")
    typer.echo(f"Quota Enforcement: {'ON' if config.quota_enforcement_enabled else 'OFF'}")
    typer.echo(f"Redis Backend: {'YES' if config.redis_url else 'NO (in-memory)'}")
    typer.echo(f"Durable Recording: {'YES' if config.durable_recording_enabled else 'NO'}")
    typer.echo(f"Directory Source: {config.directory_source}")
    typer.echo(f"Directory Refresh: every {config.directory_refresh_seconds}s")


if __name__ == "__main__":
    app()

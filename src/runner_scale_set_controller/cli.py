"""
Command-line interface for the Runner Scale Set Controller.

This module provides the CLI for running the ephemeral runner set
controller, validating its configuration and generating a sample
configuration file.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import typer
import yaml
from pydantic import ValidationError

from .controllers.runner_set_controller import EphemeralRunnerSetController
from .models.config import ControllerConfiguration, sample_configuration

app = typer.Typer(
    name="runner-scale-set-controller",
    help="Ephemeral GitHub Actions Runner Scale Set Controller for Kubernetes",
    no_args_is_help=True
)

logger = structlog.get_logger()


def load_configuration(config_path: str) -> ControllerConfiguration:
    """
    Load and validate configuration from file.

    Args:
        config_path: Path to a YAML or JSON configuration file

    Returns:
        Validated configuration object

    Raises:
        typer.Exit: If the file is missing or the configuration is invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        typer.echo(f"Error: Configuration file not found: {config_path}", err=True)
        raise typer.Exit(1)

    try:
        with open(config_file, 'r') as f:
            if config_file.suffix == '.json':
                config_data = json.load(f)
            else:
                config_data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)

    try:
        config = ControllerConfiguration(**(config_data or {}))
    except ValidationError as e:
        typer.echo("Configuration validation error:", err=True)
        for error in e.errors():
            typer.echo(f"  {error['loc']}: {error['msg']}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Configuration loaded successfully from {config_path}")
    return config


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Setup structured logging with specified level and format."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper()))

    renderer: Any
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _summary(config: ControllerConfiguration) -> Dict[str, Any]:
    return {
        "namespace": config.namespace or "all namespaces",
        "max_concurrent_reconciles": config.max_concurrent_reconciles,
        "requeue_backoff": f"{config.requeue_base_delay}s..{config.requeue_max_delay}s",
        "github_token": "configured" if config.github.token is not None else "from runner set secrets",
        "metrics": f"port {config.monitoring_port}" if config.enable_metrics else "disabled",
    }


@app.command()
def run(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file",
        envvar="RUNNER_CONTROLLER_CONFIG"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level", "-l",
        help="Logging level (overrides the configuration)",
        envvar="LOG_LEVEL"
    ),
    log_format: str = typer.Option(
        "json",
        "--log-format",
        help="Log format (json or console)",
        envvar="LOG_FORMAT"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate configuration without starting controller"
    )
) -> None:
    """
    Start the Runner Scale Set Controller.

    Loads configuration, sets up logging, and reconciles ephemeral runner
    sets until interrupted.
    """
    typer.echo("🚀 Starting Runner Scale Set Controller")
    typer.echo(f"📄 Loading configuration from: {config}")

    controller_config = load_configuration(config)
    setup_logging(log_level or controller_config.log_level, log_format)

    if dry_run:
        typer.echo("✅ Configuration validation successful (dry run)")
        for key, value in _summary(controller_config).items():
            typer.echo(f"   {key}: {value}")
        return

    controller = EphemeralRunnerSetController(controller_config)
    try:
        asyncio.run(_run_controller(controller))
    except KeyboardInterrupt:
        typer.echo("\n🛑 Shutdown requested by user")
    except Exception as e:
        typer.echo(f"❌ Controller failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    )
) -> None:
    """
    Validate configuration file without starting the controller.
    """
    typer.echo("🔍 Validating configuration...")
    controller_config = load_configuration(config)

    typer.echo("✅ Configuration validation successful")
    typer.echo(f"📦 Namespace: {controller_config.namespace or 'all namespaces'}")
    typer.echo(f"⚙️  Concurrent reconciles: {controller_config.max_concurrent_reconciles}")
    typer.echo(f"🔁 Requeue backoff: {controller_config.requeue_base_delay}s to {controller_config.requeue_max_delay}s")
    typer.echo(f"📈 Metrics enabled: {controller_config.enable_metrics}")

    if controller_config.github.token is None:
        typer.echo("⚠️  No fallback GitHub token: every runner set must reference a config secret")
    if not controller_config.github.tls_verify:
        typer.echo("⚠️  TLS verification is disabled for GitHub requests", err=True)


@app.command()
def generate_config(
    output: str = typer.Option(
        "config.yaml",
        "--output", "-o",
        help="Output configuration file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Configuration format (yaml or json)"
    )
) -> None:
    """
    Generate a sample configuration file with default settings.
    """
    sample_config = sample_configuration()

    try:
        with open(Path(output), 'w') as f:
            if format.lower() == 'json':
                json.dump(sample_config, f, indent=2)
            else:
                yaml.dump(sample_config, f, default_flow_style=False, indent=2, sort_keys=False)
    except OSError as e:
        typer.echo(f"❌ Failed to generate configuration: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Sample configuration generated: {output}")
    typer.echo("🔧 Please update the namespace and GitHub token before use")


async def _run_controller(controller: EphemeralRunnerSetController) -> None:
    """Run the controller with proper async handling."""
    try:
        await controller.start()
    except Exception as e:
        logger.error("Controller error", error=str(e))
        raise
    finally:
        try:
            await controller.stop()
        except Exception as e:
            logger.error("Error during controller shutdown", error=str(e))


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()

"""Thin CLI wrapper for kernel_deploy.

This module provides the command-line interface using Typer.
All business logic is delegated to the pipeline.
"""

import logging
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from kernel_deploy import __version__
from kernel_deploy.config import Settings, get_settings, print_settings_json
from kernel_deploy.errors import KernelDeployError, UsageError
from kernel_deploy.models import BuildConfig

app = typer.Typer(
    name="kdeploy",
    help="Cross-build a Raspberry Pi ARM64 kernel and deploy it over SSH",
    context_settings={"help_option_names": ["-h", "--help"]},
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("kernel_deploy")

# Short options of the command; a value made only of these is a swallowed flag
SHORT_OPTIONS = "cmvdh"


def configure_logging(level: str) -> None:
    """Send package logs to stderr through rich."""
    handler = RichHandler(console=err_console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False


def _looks_like_option(value: str) -> bool:
    """Whether an option value is really one of this command's flags."""
    if value.startswith("--"):
        return True
    return len(value) > 1 and value[0] == "-" and set(value[1:]) <= set(SHORT_OPTIONS)


def _check_option_values(local_version: str | None, deploy: str | None) -> None:
    """Reject option values that Click consumed from the following flag.

    Raises:
        UsageError: If ``--version`` got a flag or ``--deploy`` got a value
            starting with ``-``.
    """
    if local_version is not None and _looks_like_option(local_version):
        raise UsageError(
            f"Argument for --version is missing (got option '{local_version}')"
        )
    if deploy is not None and deploy.startswith("-"):
        raise UsageError(f"Argument for --deploy is missing (got '{deploy}')")


def _build_config(
    settings: Settings,
    clean: bool,
    module: bool,
    local_version: str | None,
    custom_config: Path | None,
) -> BuildConfig:
    if custom_config is None:
        default_config = settings.custom_dir / "config"
        if default_config.is_file():
            custom_config = default_config.resolve()
    elif not custom_config.is_file():
        raise UsageError(f"Custom config not found: {custom_config}")

    try:
        return BuildConfig(
            clean_requested=clean,
            custom_config_path=custom_config,
            version_suffix=local_version,
            toolchain_triple=settings.cross_compile,
            arch=settings.arch,
            build_modules=module,
        )
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise UsageError(f"Invalid build options: {messages}") from None


@app.command()
def main(
    clean: Annotated[
        bool,
        typer.Option("--clean", "-c", help="Perform a clean build"),
    ] = False,
    module: Annotated[
        bool,
        typer.Option("--module", "-m", help="Build custom modules"),
    ] = False,
    local_version: Annotated[
        str | None,
        typer.Option(
            "--version",
            "-v",
            help="Set custom LOCALVERSION (appears in uname -r output)",
        ),
    ] = None,
    deploy: Annotated[
        str | None,
        typer.Option(
            "--deploy",
            "-d",
            help="Deploy kernel to a remote board (format: user[:password]@host)",
        ),
    ] = None,
    custom_config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            help="Kernel config to use instead of <custom_dir>/config or the defconfig",
        ),
    ] = None,
    skip_build: Annotated[
        bool,
        typer.Option("--skip-build", help="Deploy the existing staging tree only"),
    ] = False,
    show_config: Annotated[
        bool,
        typer.Option("--show-config", help="Show effective settings as JSON and exit"),
    ] = False,
) -> None:
    """Build the kernel into a staging tree and optionally deploy it."""
    from kernel_deploy.pipeline import create_context, run_pipeline

    settings = get_settings()
    if show_config:
        console.print(print_settings_json(settings))
        return

    configure_logging(settings.log_level)
    logger.debug("kdeploy %s", __version__)

    try:
        _check_option_values(local_version, deploy)
        build_config = _build_config(
            settings, clean, module, local_version, custom_config
        )
        try:
            ctx = create_context(
                settings, build_config, deploy_spec=deploy, skip_build=skip_build
            )
        except ValueError as e:
            raise UsageError(str(e)) from None

        if clean:
            console.print("Clean build requested.")
        if module:
            console.print("Custom module build requested.")
        if build_config.version_suffix:
            console.print(f"Custom LOCALVERSION set to: {build_config.version_suffix}")
        if ctx.deploy_target is not None:
            console.print(f"Deployment to {ctx.deploy_target.display} requested")

        result = run_pipeline(ctx)
    except UsageError as e:
        err_console.print(f"[red]Error: {e.message}[/red]")
        raise typer.Exit(code=2) from None
    except KernelDeployError as e:
        err_console.print(f"[red]Error: {e.message}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]Staging tree: {result.staging_root}[/green]")
    if result.kernel_releases:
        console.print(f"  Kernel releases: {', '.join(result.kernel_releases)}")
    if result.custom_modules:
        console.print(f"  Custom modules:  {len(result.custom_modules)}")
    if result.deploy_report is not None:
        console.print(
            f"[cyan]Kernel deployment completed successfully "
            f"({result.deploy_report.state.value}).[/cyan]"
        )


if __name__ == "__main__":
    app()

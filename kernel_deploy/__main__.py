"""Entry point for ``python -m kernel_deploy``."""

from kernel_deploy.cli import app

app(prog_name="kdeploy")

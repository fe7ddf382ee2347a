"""photojury CLI Package.

Provides command-line interface for resumable photo evaluation.

Usage:
    python -m photojury.cli run --config photojury.yaml
    python -m photojury.cli run --select --set-size 4
    python -m photojury.cli checkpoint-status
    python -m photojury.cli cache-stats
    python -m photojury.cli cache-clear --yes
"""

import typer

from photojury.cli.maintenance import (
    cache_clear_command,
    cache_stats_command,
    checkpoint_status_command,
)
from photojury.cli.run import run_command

# Create main app
app = typer.Typer(help="photojury: resumable batch photo evaluation")

app.command(name="run")(run_command)
app.command(name="checkpoint-status")(checkpoint_status_command)
app.command(name="cache-stats")(cache_stats_command)
app.command(name="cache-clear")(cache_clear_command)

__all__ = [
    "app",
    "run_command",
    "checkpoint_status_command",
    "cache_stats_command",
    "cache_clear_command",
]

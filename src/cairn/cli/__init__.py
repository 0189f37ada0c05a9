"""
cairn.cli — CLI entry point.

Commands:
  cairn apply FILE [flags]   — Converge a graph
  cairn plan FILE [flags]    — Show what apply would change
  cairn validate FILE        — Parse a template, print the order
  cairn delete NAME          — Delete a graph's resources
  cairn status [NAME]        — Recorded graphs and node states
  cairn exports              — Published exports
"""

import logging

import click

from cairn.cli.common import CliState
from cairn.cli.apply_cmd import apply_cmd
from cairn.cli.plan_cmd import plan_cmd
from cairn.cli.validate_cmd import validate_cmd
from cairn.cli.delete_cmd import delete_cmd
from cairn.cli.status_cmd import status_cmd
from cairn.cli.exports_cmd import exports_cmd


@click.group()
@click.version_option(package_name="cairn")
@click.option("--state-dir", default=None, type=click.Path(file_okay=False),
              help="State directory (default: ~/.cairn/state)")
@click.option("--provider", "provider_name", default=None,
              help="Provider name (default: local)")
@click.option("-v", "--verbose", count=True,
              help="Log to stderr (-v info, -vv debug)")
@click.pass_context
def main(ctx, state_dir, provider_name, verbose):
    """cairn — declarative network infrastructure."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG if verbose > 1 else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    ctx.obj = CliState(state_dir=state_dir, provider_name=provider_name)


main.add_command(apply_cmd, "apply")
main.add_command(plan_cmd, "plan")
main.add_command(validate_cmd, "validate")
main.add_command(delete_cmd, "delete")
main.add_command(status_cmd, "status")
main.add_command(exports_cmd, "exports")

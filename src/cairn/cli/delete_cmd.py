"""
cairn.cli.delete_cmd — cairn delete command.

Exit codes:
  0  all resources deleted, graph record removed
  2  another graph still imports this graph's exports
  1  any other error
"""

import sys

import click

from cairn.cli.apply_cmd import print_result
from cairn.cli.common import cancel_on_interrupt, fail
from cairn.engine.apply import delete_stack
from cairn.errors import CairnError, GraphInUseError


@click.command("delete")
@click.argument("name")
@click.option("--max-workers", type=click.IntRange(min=1), default=None,
              help="Concurrent provider operations")
@click.pass_obj
def delete_cmd(state, name, max_workers):
    """Delete a graph and all its resources."""
    cfg = state.config
    store = state.store()
    provider = state.provider()

    with cancel_on_interrupt() as cancel:
        try:
            result = delete_stack(
                name,
                store=store,
                provider=provider,
                max_workers=max_workers or cfg.max_workers,
                node_timeout=cfg.node_timeout,
                cancel=cancel,
            )
        except GraphInUseError as e:
            fail(e, code=2)
        except CairnError as e:
            fail(e)

    if result.nodes:
        print_result(result)
    if not result.success:
        for error in result.errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)
    click.echo(f"✓ {name} deleted.", err=True)

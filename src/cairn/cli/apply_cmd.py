"""
cairn.cli.apply_cmd — cairn apply command.

    cairn apply templates/vpc-a.yaml --name Network
    cairn apply templates/vpc-b.yaml --name Peering --param-file peering.yaml
    cairn apply net.yaml --max-workers 8 --timeout 300 --rollback

Exit code 0 when the graph converged, 1 otherwise.
"""

import sys

import click

from cairn.cli.common import cancel_on_interrupt, fail, with_param_options
from cairn.engine.apply import apply_stack
from cairn.engine.reconciler import ApplyResult
from cairn.errors import CairnError


@click.command("apply")
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@with_param_options
@click.option("--max-workers", type=click.IntRange(min=1), default=None,
              help="Concurrent provider operations")
@click.option("--timeout", "node_timeout", type=click.FloatRange(min=0, min_open=True),
              default=None, help="Per-node operation timeout in seconds")
@click.option("--rollback", is_flag=True, default=False,
              help="Undo this apply's changes if any node fails")
@click.pass_obj
def apply_cmd(state, template, name, param_args, param_files, region,
              max_workers, node_timeout, rollback):
    """Create or update a graph's resources."""
    cfg = state.config
    store = state.store()
    provider = state.provider()

    with cancel_on_interrupt() as cancel:
        try:
            result = apply_stack(
                template,
                store=store,
                provider=provider,
                name=name,
                param_files=list(param_files),
                param_args=list(param_args),
                region=region or cfg.region,
                max_workers=max_workers or cfg.max_workers,
                node_timeout=node_timeout or cfg.node_timeout,
                on_failure="rollback" if rollback else cfg.on_failure,
                cancel=cancel,
            )
        except (CairnError, ValueError, FileNotFoundError) as e:
            fail(e)

    print_result(result)
    if not result.success:
        for error in result.errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)
    click.echo(f"✓ {result.graph} converged ({result.operations} provider operation(s)).",
               err=True)


def print_result(result: ApplyResult) -> None:
    click.echo(f"{'NODE':<28} {'KIND':<24} {'ACTION':<10} {'STATUS':<18} {'ID'}")
    click.echo("─" * 100)
    for res in result.nodes.values():
        action = res.action.value if res.action else "-"
        click.echo(
            f"{res.name:<28} {res.kind:<24} {action:<10} "
            f"{res.status.value:<18} {res.provider_id or '-'}"
        )
    if result.outputs:
        click.echo("")
        click.echo("Outputs:")
        for key, value in result.outputs.items():
            click.echo(f"  {key}: {value}")
    if result.cancelled:
        click.echo("Cancelled before all nodes were started.", err=True)
    if result.rolled_back:
        click.echo("Changes were rolled back.", err=True)

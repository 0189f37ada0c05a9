"""
cairn.cli.status_cmd — cairn status command.

    cairn status            — every recorded graph
    cairn status Network    — node table of one graph
"""

import click

from cairn.cli.common import fail
from cairn.errors import GraphNotFoundError


@click.command("status")
@click.argument("name", required=False, default=None)
@click.pass_obj
def status_cmd(state, name):
    """Show recorded graphs."""
    store = state.store()

    if name is None:
        graphs = store.list_graphs()
        if not graphs:
            click.echo("No graphs recorded.")
            return
        click.echo(f"{'NAME':<24} {'STATUS':<12} {'NODES':<7} {'UPDATED'}")
        click.echo("─" * 70)
        for graph_name in graphs:
            snap = store.get(graph_name)
            click.echo(f"{snap.name:<24} {snap.status:<12} "
                       f"{len(snap.nodes):<7} {snap.updated_at}")
        return

    snap = store.get(name)
    if snap is None:
        fail(GraphNotFoundError("No recorded graph", node=name))

    click.echo(f"Graph:    {snap.name}")
    click.echo(f"Status:   {snap.status}")
    if snap.region:
        click.echo(f"Region:   {snap.region}")
    if snap.source:
        click.echo(f"Source:   {snap.source}")
    click.echo(f"Updated:  {snap.updated_at}")
    if snap.imports:
        click.echo(f"Imports:  {', '.join(snap.imports)}")

    click.echo("")
    click.echo(f"{'NODE':<28} {'KIND':<24} {'STATUS':<18} {'ID'}")
    click.echo("─" * 90)
    for rec in snap.live_nodes().values():
        click.echo(f"{rec.name:<28} {rec.kind:<24} {rec.status:<18} "
                   f"{rec.provider_id or '-'}")
        if rec.error:
            click.echo(f"  ! {rec.error}")

    if snap.outputs:
        click.echo("")
        click.echo("Outputs:")
        for key, value in snap.outputs.items():
            click.echo(f"  {key}: {value}")
    if snap.exports:
        click.echo("")
        click.echo("Exports:")
        for key, value in snap.exports.items():
            click.echo(f"  {key}: {value}")

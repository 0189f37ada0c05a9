"""cairn.cli.exports_cmd — cairn exports command."""

import click


@click.command("exports")
@click.pass_obj
def exports_cmd(state):
    """List published exports and who imports them."""
    store = state.store()
    exports = store.exports()
    if not exports:
        click.echo("No exports published.")
        return

    click.echo(f"{'EXPORT':<32} {'GRAPH':<20} {'VALUE':<28} {'IMPORTED BY'}")
    click.echo("─" * 100)
    for name in sorted(exports):
        owner, value = exports[name]
        importers = ", ".join(store.importers_of(name)) or "-"
        click.echo(f"{name:<32} {owner:<20} {str(value):<28} {importers}")

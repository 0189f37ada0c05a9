"""cairn.cli.validate_cmd — cairn validate command."""

import click

from cairn.cli.common import fail
from cairn.errors import CairnError
from cairn.template.parser import parse_template_file


@click.command("validate")
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
def validate_cmd(template):
    """Parse a template and print its creation order."""
    try:
        graph = parse_template_file(template)
    except CairnError as e:
        fail(e)

    click.echo(f"✓ {graph.name}: {len(graph)} resource(s), "
               f"{len(graph.parameters)} parameter(s), {len(graph.outputs)} output(s)")
    for i, layer in enumerate(graph.layers(), 1):
        click.echo(f"  {i}. {', '.join(layer)}")

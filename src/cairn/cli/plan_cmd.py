"""
cairn.cli.plan_cmd — cairn plan command.

Resolves the template against recorded state and prints the action per
node. Never calls the provider.
"""

import click

from cairn.cli.common import fail, with_param_options
from cairn.engine.apply import plan_stack
from cairn.errors import CairnError


@click.command("plan")
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@with_param_options
@click.pass_obj
def plan_cmd(state, template, name, param_args, param_files, region):
    """Show what apply would change."""
    try:
        plan = plan_stack(
            template,
            store=state.store(),
            name=name,
            param_files=list(param_files),
            param_args=list(param_args),
            region=region or state.config.region,
        )
    except (CairnError, ValueError, FileNotFoundError) as e:
        fail(e)

    click.echo(f"Graph: {plan.graph.name}")
    for change in plan.changes:
        click.echo(f"  {change.action.value:<8} {change.name} ({change.kind})")
    skipped = sorted(set(plan.graph.nodes) - set(plan.order))
    for name in skipped:
        click.echo(f"  {'skip':<8} {name} (condition false)")
    if plan.imports:
        click.echo(f"Imports: {', '.join(plan.imports)}")

    counts = plan.counts()
    summary = ", ".join(f"{n} to {a.value}" for a, n in counts.items() if n)
    click.echo(f"Plan: {summary or 'nothing to do'}")

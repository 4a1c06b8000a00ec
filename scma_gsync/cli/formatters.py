"""CLI output formatting functions.

This module contains functions for displaying planned actions and run
reports on the command line.
"""

from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from scma_gsync.sync.diff import ActionSet
    from scma_gsync.sync.executor import RunReport

# Maximum entries listed per section
DISPLAY_LIMIT = 10

_SYMBOLS = {"create": "+", "update": "~"}


def show_detailed_changes(actions: "ActionSet", limit: int = DISPLAY_LIMIT) -> None:
    """
    Display the creates and updates of an ActionSet.

    Args:
        actions: The planned actions
        limit: Maximum entries shown per operation
    """
    click.echo("\n=== Detailed Changes ===")

    for title, planned in (("To create", actions.creates), ("To update", actions.updates)):
        if not planned:
            continue
        click.echo(f"\n{title}:")
        for action in planned[:limit]:
            symbol = _SYMBOLS[action.operation.value]
            click.echo(f"  {symbol} {action.entity}")
        if len(planned) > limit:
            click.echo(f"  ... and {len(planned) - limit} more")


def show_report(report: "RunReport") -> None:
    """
    Display a run report.

    Counts go to stdout; failures are enumerated on stderr.
    """
    verb = "planned" if report.dry_run else "completed"
    click.echo("\n" + "=" * 50)
    click.echo(f"Sync {verb} ({report.kind})")
    click.echo(f"  Created:   {report.created}")
    click.echo(f"  Updated:   {report.updated}")
    click.echo(f"  Unchanged: {report.unchanged}")
    click.echo(f"  Failed:    {report.failed}")
    click.echo("=" * 50)

    if report.aborted:
        click.echo(
            click.style(f"\nRun aborted: {report.aborted}", fg="red"), err=True
        )

    if report.failures:
        click.echo(click.style(f"\n{report.failed} actions failed:", fg="red"), err=True)
        for failure in report.failures:
            hint = " (transient)" if failure.transient else ""
            click.echo(f"  {failure}{hint}", err=True)

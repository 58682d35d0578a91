"""Helper functions for resgraph output.

Console listings of plans and audit logs, JSON exports and small graph
dictionary utilities shared by the CLI commands.
"""

import json
from typing import Any, Dict, List, Optional

import click

from planner.exceptions import ResGraphError
from planner.model import ResourceGraph
from planner.scheduler import CREATE, NOOP, UPDATE, Plan
from planner.values import Known

ACTION_SYMBOLS = {CREATE: ("+", "green"), UPDATE: ("~", "yellow"), NOOP: (" ", "white")}


def graphdict(graph: ResourceGraph) -> Dict[str, List[str]]:
    """Dependency adjacency as a sorted plain dictionary.

    Args:
        graph: Resolved ResourceGraph

    Returns:
        node id -> sorted list of node ids it depends on
    """
    result = {node_id: sorted(deps) for node_id, deps in graph.depends_on.items()}
    return dict(sorted(result.items()))


def export_json(data: Any, outfile: str) -> str:
    """Write data as indented JSON; returns the file name used."""
    if not outfile.endswith(".json"):
        outfile += ".json"
    with open(outfile, "w") as f:
        json.dump(data, f, indent=4, sort_keys=True)
    click.echo(f"\nExporting plan object into file {outfile}")
    return outfile


def output_logs(graph: ResourceGraph) -> None:
    """Print the cycle-split and prune logs."""
    if graph.split_log:
        click.echo(click.style("\nCycle splits:", fg="white", bold=True))
        for entry in graph.split_log:
            click.echo(
                f"  {entry['edge_id']}: {entry['source']}.{entry['attribute']} -> "
                f"{entry['target']} ({entry['direction']})"
            )
    if graph.prune_log:
        click.echo(click.style("\nPruned nodes:", fg="white", bold=True))
        for entry in graph.prune_log:
            click.echo(f"  {entry['node_id']}: {entry['reason']}")


def output_plan(
    plan: Plan, known: Optional[Known] = None, orphans: Optional[List[str]] = None
) -> None:
    """Print a dry-run listing of the plan, batch by batch."""
    data = plan.to_dict(known)
    output_logs(plan.graph)
    for index, batch in enumerate(data["batches"]):
        click.echo(click.style(f"\nBatch {index + 1}:", fg="white", bold=True))
        for entry in batch:
            symbol, colour = ACTION_SYMBOLS[entry["action"]]
            click.echo(
                click.style(f"  {symbol} {entry['id']}", fg=colour)
                + f"  [{entry['kind']}]"
            )
            if entry["action"] == NOOP:
                continue
            for name, value in sorted(entry["attributes"].items()):
                click.echo(f"      {name} = {json.dumps(value)}")
    for node_id in orphans or []:
        click.echo(
            click.style(
                f"\nWARNING: {node_id} exists in state but is no longer declared",
                fg="yellow",
            )
        )
    click.echo(
        click.style(
            f"\nPlan: {plan.changes} to change, "
            f"{len(plan.node_ids()) - plan.changes} unchanged.",
            bold=True,
        )
    )


def output_error(error: ResGraphError) -> None:
    """Report a resgraph error with its kind and node id."""
    node = f" [{error.node_id}]" if error.node_id else ""
    click.echo(click.style(f"\nERROR {error.kind}{node}: {error}", fg="red", bold=True))

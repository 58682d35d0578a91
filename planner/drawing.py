"""Drawing module for resgraph.

Renders a plan as a Graphviz diagram: one cluster per apply batch, arrows
from each dependency to its dependent, EdgeResources drawn dashed. Pruned
nodes never appear since they are not part of the plan.
"""

import os
from typing import Dict

import click
import graphviz

import planner.config.defaults as defaults
from planner.scheduler import CREATE, Plan


def _node_name(plan: Plan, node_id: str) -> str:
    # Graphviz reads ':' in edge endpoints as a port, so ids are not used as names
    return f"n{plan.graph.nodes[node_id].order}"


def build_digraph(plan: Plan, title: str = "resgraph plan") -> graphviz.Digraph:
    """Build the Digraph for a plan without rendering it."""
    dot = graphviz.Digraph(
        name="resgraph",
        graph_attr={
            "label": title,
            "labelloc": "t",
            "rankdir": "TB",
            "fontname": "Sans-Serif",
            "compound": "true",
        },
        node_attr={"fontname": "Sans-Serif", "fontsize": "11"},
    )
    for index, batch in enumerate(plan.batches):
        with dot.subgraph(name=f"cluster_batch_{index}") as cluster:
            cluster.attr(label=f"Batch {index + 1}", **defaults.BATCH_CLUSTER_STYLE)
            for node_id in batch:
                node = plan.graph.nodes[node_id]
                action = plan.actions.get(node_id, CREATE)
                style: Dict[str, str] = dict(defaults.NODE_STYLES[node.kind.value])
                cluster.node(
                    _node_name(plan, node_id), label=f"{node_id}\n({action})", **style
                )

    for node_id in plan.node_ids():
        node = plan.graph.nodes[node_id]
        for dependency in plan.graph.depends_on.get(node_id, []):
            if dependency not in plan.graph.nodes:
                continue
            dot.edge(
                _node_name(plan, dependency),
                _node_name(plan, node_id),
                style="dashed" if node.is_edge else "solid",
            )
    return dot


def render_plan(
    plan: Plan,
    outfile: str = "plan",
    format: str = defaults.OUTPUT_FORMAT,
    show: bool = False,
) -> str:
    """Render the plan diagram to disk.

    Args:
        plan: Plan to draw
        outfile: Output file name without extension
        format: png/svg/pdf/bmp, or dot for the Graphviz source only
        show: Open the rendered file with the system viewer

    Returns:
        Path of the written file
    """
    dot = build_digraph(plan, title=os.path.basename(outfile))
    click.echo(click.style("\nRendering Plan Diagram..", fg="white", bold=True))
    if format == "dot":
        path = dot.save(filename=f"{outfile}.dot")
    else:
        path = dot.render(filename=outfile, format=format, view=show, cleanup=True)
    click.echo(f"  Output file: {path}")
    return path

#!/usr/bin/env python
import importlib
import json
import logging
import sys
from typing import List

import click

import planner.applier as applier
import planner.compiler as compiler
import planner.config_loader as config_loader
import planner.drawing as drawing
import planner.fileparser as fileparser
import planner.helpers as helpers
from planner.exceptions import ConfigurationError, ResGraphError
from planner.state import StateStore


__version__ = "0.3"

DEFAULT_BACKEND = "planner.applier:LocalBackend"


def my_excepthook(exc_type, exc_value, exc_traceback):
    print(f"Unhandled error: {exc_type.__name__}: {exc_value}")


def _show_banner():
    click.echo(click.style("\nresgraph " + __version__ + "\n", fg="white", bold=True))


def _validate_source(source: list):
    for entry in source:
        if entry.endswith(".tf"):
            click.echo(
                click.style(
                    f"\nERROR: {entry} is a Terraform file. Pass resgraph declaration "
                    f"files (.hcl, .yml, .json), a folder or a git URL.\n",
                    fg="red",
                    bold=True,
                )
            )
            sys.exit(1)


def _setup(debug: bool, config_path: str) -> config_loader.PlannerConfig:
    """Load settings and configure logging for a command."""
    config = _run(lambda: config_loader.load_config(config_path or None))
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, config.log_level),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    if not debug:
        sys.excepthook = my_excepthook
    return config


def _load_backend(backend_path: str) -> applier.Backend:
    """Instantiate a backend from a 'module:ClassName' string."""
    module_name, _, class_name = backend_path.partition(":")
    try:
        backend_class = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError, ValueError) as e:
        raise ConfigurationError(
            f"Cannot load backend '{backend_path}': {e}", context={"backend": backend_path}
        ) from e
    if not issubclass(backend_class, applier.Backend):
        raise ConfigurationError(
            f"Backend '{backend_path}' does not subclass planner.applier.Backend",
            context={"backend": backend_path},
        )
    return backend_class()


def compile_source(source: List[str], state: StateStore, config):
    """Parse declaration sources and compile them into a plan."""
    _validate_source(source)
    click.echo(click.style("\nLoading Declarations..", fg="white", bold=True))
    builder = fileparser.load_declarations(list(source), cache_dir=config.cache_path)
    return compiler.compile_plan(builder, state, config.edge_prefix)


def _run(func):
    """Run a command body, turning resgraph errors into a red message and exit 1."""
    try:
        return func()
    except ResGraphError as error:
        helpers.output_error(error)
        sys.exit(1)


source_option = click.option(
    "--source",
    multiple=True,
    default=["."],
    help="Declaration files location (Folder, file or Git URL)",
)
state_option = click.option(
    "--state", default="", help="State file (default from resgraph.yml)"
)
config_option = click.option("--config", default="", help="Path to resgraph.yml")
debug_option = click.option(
    "--debug", is_flag=True, default=False, help="Debug logging and exception tracebacks"
)


@click.version_option(version=__version__, prog_name="resgraph")
@click.group()
def cli():
    """
    resgraph compiles declarative resource graphs into safe apply batches

    For help with a specific command type:

    resgraph [COMMAND] --help

    """
    pass


@cli.command()
@debug_option
@source_option
@state_option
@config_option
@click.option("--outfile", default="", help="Also export the plan as JSON")
def plan(debug, source, state, config, outfile):
    """Shows the apply batches (dry run)"""
    settings = _setup(debug, config)
    _show_banner()

    def body():
        store = StateStore.load(state or settings.state_file)
        result = compile_source(source, store, settings)
        helpers.output_plan(result, store.known(), compiler.find_orphans(result, store))
        if outfile:
            helpers.export_json(result.to_dict(store.known()), outfile)

    _run(body)


@cli.command()
@debug_option
@source_option
@state_option
@config_option
@click.option("--workers", type=int, default=0, help="Concurrent calls per batch")
@click.option(
    "--backend",
    default=DEFAULT_BACKEND,
    help="Backend class as module:ClassName",
)
def apply(debug, source, state, config, workers, backend):
    """Applies the plan batch by batch"""
    settings = _setup(debug, config)
    _show_banner()

    def body():
        state_file = state or settings.state_file
        store = StateStore.load(state_file)
        result = compile_source(source, store, settings)
        helpers.output_plan(result, store.known(), compiler.find_orphans(result, store))
        if result.is_noop():
            click.echo("\nNothing to apply.")
            return
        target = _load_backend(backend)
        if isinstance(target, applier.LocalBackend):
            target.resources = store.known()
        click.echo(click.style("\nApplying..", fg="white", bold=True))
        report = applier.apply_plan(
            result,
            target,
            store,
            max_workers=workers or settings.max_workers,
            progress=True,
        )
        store.save(state_file)
        for error in report.errors:
            helpers.output_error(error)
        click.echo(click.style(f"\n{report.summary()}", bold=True))
        if not report.ok:
            sys.exit(1)

    _run(body)


@cli.command()
@debug_option
@source_option
@state_option
@config_option
@click.option("--target", multiple=True, default=[], help="Only destroy these node ids")
@click.option(
    "--backend",
    default=DEFAULT_BACKEND,
    help="Backend class as module:ClassName",
)
def destroy(debug, source, state, config, target, backend):
    """Destroys applied nodes in reverse order"""
    settings = _setup(debug, config)
    _show_banner()

    def body():
        state_file = state or settings.state_file
        store = StateStore.load(state_file)
        result = compile_source(source, store, settings)
        report = applier.destroy_graph(
            result.graph,
            _load_backend(backend),
            store,
            node_ids=list(target) or None,
            max_workers=settings.max_workers,
            progress=True,
        )
        store.save(state_file)
        for error in report.errors:
            helpers.output_error(error)
        click.echo(click.style(f"\n{report.summary()}", bold=True))
        if not report.ok:
            sys.exit(1)

    _run(body)


@cli.command()
@debug_option
@source_option
@state_option
@config_option
@click.option(
    "--outfile",
    default="plan",
    help="Filename for output diagram (default plan.png)",
)
@click.option("--format", default="", help="File format (png/svg/pdf/bmp/dot)")
@click.option(
    "--show", is_flag=True, default=False, help="Show diagram after generation"
)
def draw(debug, source, state, config, outfile, format, show):
    """Draws the plan as a diagram"""
    settings = _setup(debug, config)
    _show_banner()

    def body():
        store = StateStore.load(state or settings.state_file)
        result = compile_source(source, store, settings)
        drawing.render_plan(result, outfile, format or settings.output_format, show)

    _run(body)


@cli.command()
@debug_option
@source_option
@config_option
@click.option(
    "--outfile",
    default="graphdata",
    help="Filename for output list (default graphdata.json)",
)
def graphdata(debug, source, config, outfile):
    """Lists nodes and their dependencies as JSON"""
    settings = _setup(debug, config)
    _show_banner()

    def body():
        result = compile_source(source, StateStore(), settings)
        data = {
            "graph": helpers.graphdict(result.graph),
            "split_log": result.graph.split_log,
            "prune_log": result.graph.prune_log,
        }
        helpers.output_logs(result.graph)
        click.echo(click.style("\nOutput JSON Dictionary :", fg="white", bold=True))
        click.echo(json.dumps(data["graph"], indent=4, sort_keys=True))
        helpers.export_json(data, outfile)
        click.echo("\nCompleted!")

    _run(body)


if __name__ == "__main__":
    cli()

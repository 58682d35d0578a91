"""File parser module for resgraph.

This module reads node declarations from HCL (.hcl), YAML (.yml/.yaml) and
JSON (.json) files. It discovers files in local directories or git sources,
turns ${ref...} strings into tagged Reference values and feeds everything to
a Builder.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import hcl2
import yaml

import planner.config.defaults as defaults
import planner.gitlibs as gitlibs
from planner.exceptions import DeclarationParsingError, DuplicateIdError
from planner.model import ABSENT, Builder, NodeKind, Reference

# ${ref.<node id>.<attribute>[:<direction>][|<default>]}
REFERENCE_PATTERN = re.compile(
    r"^\$\{ref\.(?P<target>[^|:}]+)\.(?P<attribute>[A-Za-z0-9_\-]+)"
    r"(?::(?P<direction>[A-Za-z0-9_\-]+))?"
    r"(?:\|(?P<default>.*))?\}$"
)

DECLARATION_KEYS = {"kind", "attributes", "preconditions"}


def _supported(filename: str) -> bool:
    suffix = Path(filename).suffix.lower()
    return suffix in (
        defaults.HCL_EXTENSIONS + defaults.YAML_EXTENSIONS + defaults.JSON_EXTENSIONS
    )


def find_declaration_files(source: str, cache_dir: Optional[str] = None) -> List[str]:
    """Discover declaration files in a folder, a single file or a git source.

    Args:
        source: Local directory, file path or git URL
        cache_dir: Clone cache for git sources

    Returns:
        Sorted list of declaration file paths

    Raises:
        DeclarationParsingError: If nothing usable was found
    """
    if os.path.isfile(source):
        if not _supported(source):
            raise DeclarationParsingError(
                f"Unsupported declaration file type: {source}", context={"path": source}
            )
        return [source]

    if os.path.isdir(source):
        source_location = source.strip()
    elif gitlibs.is_git_source(source):
        source_location = gitlibs.clone_source(source, cache_dir)
    else:
        raise DeclarationParsingError(
            f"Source {source} is not a file, folder or git URL",
            context={"path": source},
        )

    click.echo(f"  Added Source Location: {source}")
    paths = [
        os.path.join(source_location, name)
        for name in sorted(os.listdir(source_location))
        if _supported(name) and name not in defaults.CONFIG_FILENAMES
    ]
    if not paths:
        raise DeclarationParsingError(
            f"No declaration files (.hcl, .yml, .yaml, .json) found in {source}",
            context={"path": source},
        )
    return paths


def _unquote(text: Any) -> Any:
    """Strip the literal quotes some python-hcl2 releases keep around strings."""
    if isinstance(text, str) and len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


def parse_default(text: str) -> Any:
    if text == "null":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def parse_reference(text: str, path: str = "") -> Optional[Reference]:
    """Convert a ${ref...} string into a Reference, or None for plain strings.

    Raises:
        DeclarationParsingError: If the string embeds a reference it cannot parse
    """
    match = REFERENCE_PATTERN.match(text.strip())
    if match is None:
        if "${ref." in text:
            raise DeclarationParsingError(
                f"Malformed or embedded reference '{text}'",
                context={"path": path},
            )
        return None
    default = match.group("default")
    return Reference(
        match.group("target"),
        match.group("attribute"),
        direction=match.group("direction"),
        default=ABSENT if default is None else parse_default(default),
    )


def convert_value(value: Any, path: str = "") -> Any:
    """Recursively replace reference strings inside a parsed value."""
    value = _unquote(value)
    if isinstance(value, str):
        reference = parse_reference(value, path)
        return value if reference is None else reference
    if isinstance(value, dict):
        return {
            _unquote(k): convert_value(v, path)
            for k, v in value.items()
            if not str(k).startswith("__")
        }
    if isinstance(value, list):
        return [convert_value(v, path) for v in value]
    return value


def _single_mapping(value: Any, field: str, node_id: str, path: str) -> Dict[str, Any]:
    # HCL nested blocks come back as a list holding one mapping
    if isinstance(value, list) and len(value) == 1 and isinstance(value[0], dict):
        value = value[0]
    if not isinstance(value, dict):
        raise DeclarationParsingError(
            f"'{field}' of '{node_id}' must be a mapping",
            context={"path": path, "node_id": node_id},
        )
    return value


def normalize_declaration(node_id: str, body: Any, path: str) -> Dict[str, Any]:
    """Validate one raw declaration and convert its references."""
    body = _single_mapping(body, "resource", node_id, path)
    body = {_unquote(k): v for k, v in body.items() if not str(k).startswith("__")}
    unknown = sorted(set(body) - DECLARATION_KEYS)
    if unknown:
        raise DeclarationParsingError(
            f"Unknown key(s) {', '.join(unknown)} in declaration of '{node_id}'",
            context={"path": path, "node_id": node_id},
        )
    attributes = _single_mapping(body.get("attributes", {}), "attributes", node_id, path)
    preconditions = body.get("preconditions", [])
    if isinstance(preconditions, str):
        preconditions = [preconditions]
    kind = _unquote(body.get("kind", NodeKind.RESOURCE.value))
    if kind not in [k.value for k in NodeKind]:
        raise DeclarationParsingError(
            f"Unknown kind '{kind}' for '{node_id}'",
            context={"path": path, "node_id": node_id},
        )
    return {
        "kind": kind,
        "attributes": convert_value(attributes, path),
        "preconditions": [_unquote(p) for p in preconditions],
    }


def _duplicate_id(node_id: str, path: str) -> DuplicateIdError:
    return DuplicateIdError(
        f"Node id '{node_id}' is declared twice in {path}",
        context={"node_id": node_id, "path": path},
    )


def _read_hcl(path: str) -> Dict[str, Any]:
    with click.open_file(path, "r", encoding="utf8") as f:
        parsed = hcl2.load(f)
    resources: Dict[str, Any] = {}
    for stanza in parsed.get("resource", []):
        for label, body in stanza.items():
            node_id = _unquote(label)
            if node_id in resources:
                raise _duplicate_id(node_id, path)
            resources[node_id] = body
    return resources


def _yaml_duplicates(node: yaml.Node, seen_nodes=None) -> List[Any]:
    """Keys repeated inside any mapping below node, as (mapping node, key)."""
    seen_nodes = seen_nodes if seen_nodes is not None else set()
    if id(node) in seen_nodes:
        return []
    seen_nodes.add(id(node))
    found = []
    if isinstance(node, yaml.MappingNode):
        keys = set()
        for key_node, value_node in node.value:
            if isinstance(key_node, yaml.ScalarNode):
                if key_node.value in keys:
                    found.append((node, key_node.value))
                keys.add(key_node.value)
            found.extend(_yaml_duplicates(value_node, seen_nodes))
    elif isinstance(node, yaml.SequenceNode):
        for item in node.value:
            found.extend(_yaml_duplicates(item, seen_nodes))
    return found


def _load_yaml(f, path: str) -> Any:
    loader = yaml.SafeLoader(f)
    try:
        root = loader.get_single_node()
        if root is None:
            return None
        resources_node = None
        if isinstance(root, yaml.MappingNode):
            for key_node, value_node in root.value:
                if key_node.value == "resources":
                    resources_node = value_node
        for mapping, key in _yaml_duplicates(root):
            if mapping is resources_node:
                raise _duplicate_id(key, path)
            raise DeclarationParsingError(
                f"Duplicate key '{key}' in {path}", context={"path": path}
            )
        return loader.construct_document(root)
    finally:
        loader.dispose()


def _load_json(f, path: str) -> Any:
    duplicates = []

    def collect(pairs):
        mapping = {}
        for key, value in pairs:
            if key in mapping:
                duplicates.append((mapping, key))
            mapping[key] = value
        return mapping

    parsed = json.load(f, object_pairs_hook=collect)
    resources = parsed.get("resources") if isinstance(parsed, dict) else None
    for mapping, key in duplicates:
        if mapping is resources:
            raise _duplicate_id(key, path)
        raise DeclarationParsingError(
            f"Duplicate key '{key}' in {path}", context={"path": path}
        )
    return parsed


def _read_mapping(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf8") as f:
        if Path(path).suffix.lower() in defaults.JSON_EXTENSIONS:
            parsed = _load_json(f, path)
        else:
            parsed = _load_yaml(f, path)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("resources", {}), dict):
        raise DeclarationParsingError(
            f"{path} must contain a 'resources' mapping", context={"path": path}
        )
    return parsed.get("resources", {})


def parse_file(path: str) -> Dict[str, Dict[str, Any]]:
    """Parse one declaration file.

    Returns:
        Mapping of node id -> {"kind", "attributes", "preconditions"} in
        file order

    Raises:
        DeclarationParsingError: On syntax errors or malformed declarations
        DuplicateIdError: If one file declares the same id twice
    """
    suffix = Path(path).suffix.lower()
    try:
        if suffix in defaults.HCL_EXTENSIONS:
            raw = _read_hcl(path)
        else:
            raw = _read_mapping(path)
    except (DeclarationParsingError, DuplicateIdError):
        raise
    except Exception as e:
        raise DeclarationParsingError(
            f"Could not parse {path}: {e}", context={"path": path}
        ) from e
    return {
        str(node_id): normalize_declaration(str(node_id), body, path)
        for node_id, body in raw.items()
    }


def load_declarations(
    sources: List[str],
    builder: Optional[Builder] = None,
    cache_dir: Optional[str] = None,
) -> Builder:
    """Parse every declaration file of every source into a Builder.

    Args:
        sources: Folders, files or git URLs
        builder: Builder to add to (a new one when None)
        cache_dir: Clone cache for git sources

    Returns:
        Builder holding all declarations in source/file order

    Raises:
        DeclarationParsingError: On parse failures
        DuplicateIdError: If two declarations share an id
    """
    if builder is None:
        builder = Builder()
    for source in sources:
        for path in find_declaration_files(source, cache_dir):
            click.echo(f"  Parsing {path}")
            declarations = parse_file(path)
            for node_id, declaration in declarations.items():
                try:
                    builder.declare(node_id, **declaration)
                except DuplicateIdError as error:
                    error.context["path"] = path
                    raise
            click.echo(
                click.style(
                    f"    Found {len(declarations)} resource stanza(s)", fg="green"
                )
            )
    return builder

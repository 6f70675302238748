"""Manifest loading and validation for graph-driven provisioning.

A manifest declares a graph of resources and data sources wired together by
``${...}`` references (see interpolation.py). It is the Declared State: the
engine diffs it against persisted state and applies the difference.

    name: ecs-service
    variables:
      app_name: web
      image_tag: {default: "1.0.0", description: Container image tag}
    data:
      - type: aws_caller_identity
        name: current
    resources:
      - type: aws_s3_bucket
        name: state
        attributes:
          bucket: "${var.app_name}-state"
        lifecycle:
          prevent_destroy: true
    outputs:
      bucket_arn: "${aws_s3_bucket.state.arn}"
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from interpolation import InterpolationError, find_references

logger = logging.getLogger(__name__)

MANAGED = 'managed'
DATA = 'data'


class GraphError(ConfigError):
    """Resource graph is not orderable (cycle, dangling reference, duplicate)."""


@dataclass
class ResourceNode:
    """A declared resource or data source.

    Attributes:
        type: Resource type (e.g. aws_s3_bucket)
        name: Local name, unique per type and mode
        mode: 'managed' (created/destroyed) or 'data' (read-only lookup)
        attributes: Declared attribute -> literal or reference expression
        depends_on: Explicit dependencies (addresses) beyond interpolated ones
        prevent_destroy: Refuse plans that destroy or replace this node
    """
    type: str
    name: str
    mode: str = MANAGED
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    prevent_destroy: bool = False

    @property
    def address(self) -> str:
        if self.mode == DATA:
            return f'data.{self.type}.{self.name}'
        return f'{self.type}.{self.name}'

    @property
    def is_data(self) -> bool:
        return self.mode == DATA

    def references(self) -> set[str]:
        """Addresses this node depends on (interpolated and explicit)."""
        refs = {r.address for r in find_references(self.attributes) if r.kind != 'var'}
        refs.update(self.depends_on)
        return refs

    def variable_references(self) -> set[str]:
        return {r.address[len('var.'):] for r in find_references(self.attributes)
                if r.kind == 'var'}

    @classmethod
    def from_dict(cls, data: dict, mode: str = MANAGED) -> 'ResourceNode':
        """Create ResourceNode from dictionary."""
        lifecycle = data.get('lifecycle') or {}
        return cls(
            type=data['type'],
            name=data['name'],
            mode=mode,
            attributes=dict(data.get('attributes') or {}),
            depends_on=list(data.get('depends_on') or []),
            prevent_destroy=bool(lifecycle.get('prevent_destroy', False)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.prevent_destroy:
            d['lifecycle'] = {'prevent_destroy': True}
        return d


@dataclass
class Variable:
    """A manifest input variable."""
    name: str
    default: Any = None
    description: str = ''
    required: bool = False

    @classmethod
    def from_value(cls, name: str, value: Any) -> 'Variable':
        """Accept either a bare default or a {default, description} mapping."""
        if isinstance(value, dict) and ('default' in value or 'description' in value):
            return cls(
                name=name,
                default=value.get('default'),
                description=value.get('description', ''),
                required='default' not in value,
            )
        return cls(name=name, default=value)


@dataclass
class Manifest:
    """Declared resource graph.

    Attributes:
        name: Manifest identifier (also keys the state)
        description: Optional description
        resources: Managed resource declarations
        data: Data source declarations
        variables: Input variables by name
        outputs: Output name -> expression
        source_path: Path where manifest was loaded from (for debugging)
    """
    name: str
    resources: list[ResourceNode] = field(default_factory=list)
    data: list[ResourceNode] = field(default_factory=list)
    description: str = ''
    variables: dict[str, Variable] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    source_path: Optional[Path] = None

    @property
    def nodes(self) -> list[ResourceNode]:
        """Data sources followed by resources, in declaration order."""
        return list(self.data) + list(self.resources)

    def get_node(self, address: str) -> ResourceNode:
        """Get a node by address.

        Raises:
            KeyError: If no node has this address
        """
        for node in self.nodes:
            if node.address == address:
                return node
        raise KeyError(address)

    def resolve_variables(self, overrides: Optional[dict] = None) -> dict[str, Any]:
        """Merge variable defaults with overrides.

        Raises:
            ConfigError: If a required variable has no value or an override is undeclared
        """
        overrides = overrides or {}
        unknown = sorted(set(overrides) - set(self.variables))
        if unknown:
            raise ConfigError(f"Undeclared variable(s): {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for name, var in self.variables.items():
            if name in overrides:
                values[name] = overrides[name]
            elif var.required:
                raise ConfigError(f"Variable '{name}' has no default and was not set")
            else:
                values[name] = var.default
        return values

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'name': self.name,
            'description': self.description,
            'resources': [n.to_dict() for n in self.resources],
        }
        if self.data:
            result['data'] = [n.to_dict() for n in self.data]
        if self.variables:
            result['variables'] = {
                name: {'default': v.default, 'description': v.description}
                if not v.required else {'description': v.description}
                for name, v in self.variables.items()
            }
        if self.outputs:
            result['outputs'] = dict(self.outputs)
        return result

    def to_json(self) -> str:
        """Serialize manifest to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Raises:
            ConfigError: If a required field is missing
            GraphError: If the resource graph is invalid
        """
        if 'name' not in data:
            raise ConfigError("Manifest missing required field: name")

        resources = []
        for i, node_data in enumerate(data.get('resources') or []):
            _require_fields(node_data, f"Resource {i}")
            resources.append(ResourceNode.from_dict(node_data, MANAGED))

        data_sources = []
        for i, node_data in enumerate(data.get('data') or []):
            _require_fields(node_data, f"Data source {i}")
            if node_data.get('depends_on') or node_data.get('lifecycle'):
                raise ConfigError(
                    f"Data source '{node_data['type']}.{node_data['name']}' "
                    "does not support depends_on or lifecycle"
                )
            data_sources.append(ResourceNode.from_dict(node_data, DATA))

        if not resources and not data_sources:
            raise ConfigError("Manifest must declare at least one resource")

        variables = {
            name: Variable.from_value(name, value)
            for name, value in (data.get('variables') or {}).items()
        }

        manifest = cls(
            name=data['name'],
            description=data.get('description', ''),
            resources=resources,
            data=data_sources,
            variables=variables,
            outputs=dict(data.get('outputs') or {}),
            source_path=source_path,
        )
        _validate_graph(manifest)
        return manifest

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid manifest JSON: {e}")
        return cls.from_dict(data)


def _require_fields(node_data: Any, label: str) -> None:
    if not isinstance(node_data, dict):
        raise ConfigError(f"{label} must be a mapping")
    for key in ('type', 'name'):
        if key not in node_data:
            raise ConfigError(f"{label} ({node_data.get('name', 'unnamed')}) missing required field: {key}")


def _validate_graph(manifest: Manifest) -> None:
    """Validate the graph structure of a manifest.

    Checks for:
    - Duplicate node identities
    - Malformed or dangling references (nodes and variables)
    - Cycles in the reference graph

    Raises:
        GraphError: If validation fails
    """
    seen: set[str] = set()
    for node in manifest.nodes:
        if node.address in seen:
            raise GraphError(f"Duplicate resource identity: '{node.address}'")
        seen.add(node.address)

    edges: dict[str, set[str]] = {}
    for node in manifest.nodes:
        try:
            refs = node.references()
            var_refs = node.variable_references()
        except InterpolationError as e:
            raise GraphError(f"Node '{node.address}': {e}")

        for ref in sorted(refs):
            if ref not in seen:
                raise GraphError(f"Node '{node.address}' references unknown node '{ref}'")
            if node.is_data and not ref.startswith('data.'):
                raise GraphError(
                    f"Data source '{node.address}' cannot reference managed resource '{ref}'"
                )
        for var in sorted(var_refs):
            if var not in manifest.variables:
                raise GraphError(f"Node '{node.address}' references undeclared variable '{var}'")
        edges[node.address] = refs

    for name, expr in manifest.outputs.items():
        try:
            refs = {r.address for r in find_references(expr) if r.kind != 'var'}
        except InterpolationError as e:
            raise GraphError(f"Output '{name}': {e}")
        for ref in sorted(refs):
            if ref not in seen:
                raise GraphError(f"Output '{name}' references unknown node '{ref}'")

    cycle = find_cycle(edges)
    if cycle:
        raise GraphError(f"Cycle detected in resource graph: {' -> '.join(cycle)}")


def find_cycle(edges: dict[str, set[str]]) -> Optional[list[str]]:
    """Return one cycle as a path of addresses, or None if the graph is acyclic."""
    visited: set[str] = set()
    stack: list[str] = []
    in_stack: set[str] = set()

    def _visit(address: str) -> Optional[list[str]]:
        visited.add(address)
        stack.append(address)
        in_stack.add(address)
        for dep in sorted(edges.get(address, ())):
            if dep in in_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                found = _visit(dep)
                if found:
                    return found
        stack.pop()
        in_stack.discard(address)
        return None

    for address in edges:
        if address not in visited:
            found = _visit(address)
            if found:
                return found
    return None


class ManifestLoader:
    """Loads manifests from the workspace manifests/ directory."""

    def __init__(self, manifests_dir: Path):
        self.manifests_dir = Path(manifests_dir)

    def list_manifests(self) -> list[str]:
        """List available manifest names."""
        if not self.manifests_dir.exists():
            return []
        return sorted([
            f.stem for f in self.manifests_dir.glob('*.yaml')
            if f.is_file()
        ])

    def load(self, name: str) -> Manifest:
        """Load manifest by name.

        Raises:
            ConfigError: If manifest not found or invalid
        """
        path = self.manifests_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_manifests()
            raise ConfigError(
                f"Manifest '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )

        return self.load_file(path)

    def load_file(self, path: Path) -> Manifest:
        """Load manifest from specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Manifest file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Manifest {path} must be a YAML object (dict)")

        logger.debug(f"Loaded manifest from {path}")
        return Manifest.from_dict(data, source_path=path)


def load_manifest(
    manifests_dir: Path,
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Manifest:
    """Load manifest from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named manifest from manifests/

    Raises:
        ConfigError: If no source is given, or manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    loader = ManifestLoader(manifests_dir)
    if file_path:
        return loader.load_file(Path(file_path))
    if name:
        return loader.load(name)
    raise ConfigError("No manifest specified")

"""Reference interpolation for manifest attribute values.

Attribute values are literals or contain ``${...}`` expressions that point at
another node's attribute:

    ${aws_s3_bucket.state.arn}                      managed resource
    ${data.aws_caller_identity.current.account_id}  data source
    ${var.app_name}                                 manifest variable
    ${aws_subnet.main.tags.Name}                    nested map key
    ${aws_ecs_service.app.load_balancer[0].port}    list index

A string that is exactly one expression takes the referenced value with its
own type; expressions embedded in a longer string are substituted as text.
A mapping of the single key ``jsonencode`` is resolved and then rendered to
canonical JSON text, which is how policy documents and container definitions
are declared.

References to nodes that are not applied yet resolve to UNKNOWN; any value
that contains UNKNOWN is not sent to a provider.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

EXPR_RE = re.compile(r'\$\{\s*([^}]+?)\s*\}')
_PATH_TOKEN_RE = re.compile(r'([^.\[\]]+)|\[(\d+)\]')

JSONENCODE_KEY = 'jsonencode'


class InterpolationError(Exception):
    """A reference expression could not be parsed or resolved."""


class _Unknown:
    """Sentinel for values known only after apply."""

    _instance: Optional['_Unknown'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed ``${...}`` expression.

    Attributes:
        kind: 'resource', 'data' or 'var'
        address: Node address ('type.name', 'data.type.name') or 'var.name'
        path: Attribute path below the node (keys and list indexes)
    """
    kind: str
    address: str
    path: tuple = field(default_factory=tuple)

    def __str__(self) -> str:
        parts = [self.address]
        for p in self.path:
            parts.append(f'[{p}]' if isinstance(p, int) else f'.{p}')
        return ''.join(parts)


def parse_reference(expr: str) -> Reference:
    """Parse the body of a ``${...}`` expression.

    Raises:
        InterpolationError: If the expression is malformed
    """
    expr = expr.strip()
    tokens: list[Union[str, int]] = []
    pos = 0
    for m in _PATH_TOKEN_RE.finditer(expr):
        between = expr[pos:m.start()]
        if between not in ('', '.'):
            raise InterpolationError(f"Malformed reference '${{{expr}}}'")
        tokens.append(m.group(1) if m.group(1) is not None else int(m.group(2)))
        pos = m.end()
    if pos != len(expr) or not tokens:
        raise InterpolationError(f"Malformed reference '${{{expr}}}'")

    if tokens[0] == 'var':
        if len(tokens) < 2 or not isinstance(tokens[1], str):
            raise InterpolationError(f"Malformed variable reference '${{{expr}}}'")
        return Reference('var', f'var.{tokens[1]}', tuple(tokens[2:]))

    if tokens[0] == 'data':
        if len(tokens) < 4 or not all(isinstance(t, str) for t in tokens[1:3]):
            raise InterpolationError(
                f"Data source reference '${{{expr}}}' must be data.<type>.<name>.<attribute>"
            )
        return Reference('data', f'data.{tokens[1]}.{tokens[2]}', tuple(tokens[3:]))

    if len(tokens) < 3 or not isinstance(tokens[1], str):
        raise InterpolationError(
            f"Resource reference '${{{expr}}}' must be <type>.<name>.<attribute>"
        )
    return Reference('resource', f'{tokens[0]}.{tokens[1]}', tuple(tokens[2:]))


def find_references(value: Any) -> list[Reference]:
    """Collect every reference in a (possibly nested) attribute value."""
    refs: list[Reference] = []
    if isinstance(value, str):
        for m in EXPR_RE.finditer(value):
            refs.append(parse_reference(m.group(1)))
    elif isinstance(value, dict):
        for v in value.values():
            refs.extend(find_references(v))
    elif isinstance(value, (list, tuple)):
        for v in value:
            refs.extend(find_references(v))
    return refs


def node_references(value: Any) -> set[str]:
    """Addresses of resources and data sources referenced by a value."""
    return {r.address for r in find_references(value) if r.kind != 'var'}


def contains_unknown(value: Any) -> bool:
    """True if UNKNOWN appears anywhere in a value."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def render_json(value: Any) -> str:
    """Render a resolved structure as canonical JSON text."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'))


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list)):
        return render_json(value)
    if value is None:
        return ''
    return str(value)


# Returns the attributes of a node, UNKNOWN if the node is not realized yet.
NodeLookup = Callable[[str], Union[dict, _Unknown]]


class Resolver:
    """Resolves attribute values against variables and realized node attributes.

    Args:
        variables: Variable name -> value
        lookup: Callable returning a node's attributes (or UNKNOWN)
    """

    def __init__(self, variables: dict, lookup: NodeLookup):
        self.variables = variables
        self.lookup = lookup

    def resolve(self, value: Any) -> Any:
        """Resolve every expression in value, preserving its structure."""
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            if len(value) == 1 and JSONENCODE_KEY in value:
                inner = self.resolve(value[JSONENCODE_KEY])
                if contains_unknown(inner):
                    return UNKNOWN
                return render_json(inner)
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(v) for v in value]
        return value

    def _resolve_string(self, text: str) -> Any:
        whole = EXPR_RE.fullmatch(text)
        if whole:
            return self.resolve_reference(parse_reference(whole.group(1)))

        unknown = False

        def _substitute(m: re.Match) -> str:
            nonlocal unknown
            resolved = self.resolve_reference(parse_reference(m.group(1)))
            if contains_unknown(resolved):
                unknown = True
                return ''
            return _to_text(resolved)

        rendered = EXPR_RE.sub(_substitute, text)
        return UNKNOWN if unknown else rendered

    def resolve_reference(self, ref: Reference) -> Any:
        """Resolve one reference to its current value.

        Raises:
            InterpolationError: If the variable, node or attribute does not exist
        """
        if ref.kind == 'var':
            name = ref.address[len('var.'):]
            if name not in self.variables:
                raise InterpolationError(f"Undefined variable '{name}'")
            return _walk(self.variables[name], ref.path, ref)

        attributes = self.lookup(ref.address)
        if attributes is UNKNOWN:
            return UNKNOWN
        if attributes is None:
            raise InterpolationError(f"Reference to undeclared node '{ref.address}'")
        return _walk(attributes, ref.path, ref)


def _walk(value: Any, path: tuple, ref: Reference) -> Any:
    """Follow an attribute path into a value."""
    for step in path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(step, int):
            if not isinstance(value, list) or step >= len(value):
                raise InterpolationError(f"Index [{step}] out of range in '{ref}'")
            value = value[step]
        else:
            if not isinstance(value, dict) or step not in value:
                raise InterpolationError(f"Unsupported attribute '{step}' in '{ref}'")
            value = value[step]
    return value

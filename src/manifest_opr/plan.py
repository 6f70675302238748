"""Diff and reconciliation for manifest-based orchestration.

Compares the Declared State (manifest) with the refreshed realized state and
classifies every node:

    no-op    declared attributes match what exists
    create   not in state, or deleted outside the engine
    update   changed attributes can be modified in place
    replace  a changed attribute forces a new resource (destroy, then create)
    destroy  in state but no longer declared (or destroy mode)
    read     data source lookup

Planning only reads from the provider; it never creates, changes or deletes
anything, so a plan doubles as the dry run.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import call_with_retry
from interpolation import (
    UNKNOWN,
    InterpolationError,
    Resolver,
    contains_unknown,
)
from manifest import Manifest, ResourceNode
from manifest_opr.backend import ResourceState, StateDocument
from manifest_opr.graph import ResourceGraph, topological_sort
from providers.base import Provider, TransientProviderError
from providers.schemas import ResourceSchema, schema_or_default

logger = logging.getLogger(__name__)

NO_OP = 'no-op'
CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DESTROY = 'destroy'
READ = 'read'

MUTATING_ACTIONS = (CREATE, UPDATE, REPLACE, DESTROY)

_SYMBOLS = {
    NO_OP: ' ',
    CREATE: '+',
    UPDATE: '~',
    REPLACE: '-/+',
    DESTROY: '-',
    READ: '<=',
}


class PlanError(Exception):
    """The declared graph cannot be reconciled with the current state."""


@dataclass
class Drift:
    """An attribute whose live value no longer matches persisted state."""
    attribute: str
    persisted: Any
    observed: Any

    def to_dict(self) -> dict:
        return {'attribute': self.attribute, 'persisted': self.persisted,
                'observed': self.observed}


@dataclass
class PlannedChange:
    """The planned operation for one node.

    Attributes:
        address: Node address
        type: Resource type
        action: One of the action constants above
        before: Refreshed attributes before the change (None when absent)
        after: Expected attributes after the change; may contain UNKNOWN
        changed: Attributes that differ from the refreshed state
        replace_reasons: Changed attributes that force replacement
        drift: Out-of-band differences detected during refresh
        dependencies: Addresses this node depends on
    """
    address: str
    type: str
    action: str
    before: Optional[dict] = None
    after: Optional[dict] = None
    changed: list[str] = field(default_factory=list)
    replace_reasons: list[str] = field(default_factory=list)
    drift: list[Drift] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    @property
    def is_mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'type': self.type,
            'action': self.action,
        }
        if self.changed:
            d['changed'] = self.changed
        if self.replace_reasons:
            d['replace_reasons'] = self.replace_reasons
        if self.drift:
            d['drift'] = [x.to_dict() for x in self.drift]
        if self.after is not None and self.action != DESTROY:
            d['after'] = _render_unknown(self.after)
        return d


@dataclass
class Plan:
    """Ordered list of planned changes for a manifest.

    Changes are kept in execution order: destroys of undeclared resources
    first (dependents before dependencies), then every declared node in
    dependency order.
    """
    manifest_name: str
    destroy: bool = False
    changes: dict[str, PlannedChange] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    data_values: dict[str, dict] = field(default_factory=dict)

    def add(self, change: PlannedChange) -> None:
        self.changes[change.address] = change

    def ordered(self) -> list[PlannedChange]:
        return list(self.changes.values())

    def mutating(self) -> list[PlannedChange]:
        return [c for c in self.changes.values() if c.is_mutating]

    def get(self, address: str) -> PlannedChange:
        return self.changes[address]

    @property
    def has_changes(self) -> bool:
        return bool(self.mutating())

    @property
    def drift(self) -> list[PlannedChange]:
        return [c for c in self.changes.values() if c.drift]

    def summary(self) -> dict[str, int]:
        counts = {a: 0 for a in (CREATE, UPDATE, REPLACE, DESTROY, NO_OP)}
        for c in self.changes.values():
            if c.action in counts:
                counts[c.action] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'manifest': self.manifest_name,
            'destroy': self.destroy,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes.values()],
            'outputs': _render_unknown(self.outputs),
        }


def _render_unknown(value: Any) -> Any:
    """Replace UNKNOWN with a printable marker for JSON output."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: _render_unknown(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_render_unknown(v) for v in value]
    return value


def diff_attributes(declared: dict, observed: dict, schema: ResourceSchema) -> list[str]:
    """Attributes that differ between a declaration and the live resource.

    An UNKNOWN declared value counts as changed. A non-computed attribute
    that exists live but is no longer declared counts as changed (removal).
    """
    changed = set()
    for key, value in declared.items():
        if contains_unknown(value) or observed.get(key) != value:
            changed.add(key)
    for key in observed:
        if key not in declared and key not in schema.computed:
            changed.add(key)
    return sorted(changed)


def detect_drift(persisted: dict, observed: dict) -> list[Drift]:
    """Attributes whose live value differs from the persisted one."""
    drift = []
    for key in sorted(set(persisted) | set(observed)):
        if persisted.get(key) != observed.get(key):
            drift.append(Drift(key, persisted.get(key), observed.get(key)))
    return drift


def destroy_sequence(resources: dict[str, ResourceState]) -> list[str]:
    """Addresses of persisted resources ordered dependents-first."""
    edges = {a: set(r.dependencies) for a, r in resources.items()}
    return list(reversed(topological_sort(sorted(resources), edges)))


class Planner:
    """Computes a Plan from a manifest, its graph and the persisted state.

    Args:
        manifest: Declared resource graph
        graph: Dependency graph built from the manifest
        document: Persisted state
        provider: Provider used for refresh and data source reads
        variables: Resolved manifest variables
        refresh: Read live state of every persisted resource before diffing
        retries: Retries for transient provider errors during reads
        retry_backoff: Base backoff in seconds between retries
    """

    def __init__(
        self,
        manifest: Manifest,
        graph: ResourceGraph,
        document: StateDocument,
        provider: Provider,
        variables: dict,
        refresh: bool = True,
        retries: int = 3,
        retry_backoff: float = 0.5,
    ):
        self.manifest = manifest
        self.graph = graph
        self.document = document
        self.provider = provider
        self.variables = variables
        self.refresh = refresh
        self.retries = retries
        self.retry_backoff = retry_backoff
        self._values: dict[str, Any] = {}
        self._observed: dict[str, Optional[dict]] = {}

    def _lookup(self, address: str):
        if address in self._values:
            return self._values[address]
        if address in self.graph:
            return UNKNOWN
        return None

    def _read(self, func, description: str):
        return call_with_retry(
            func,
            retry_on=(TransientProviderError,),
            retries=self.retries,
            backoff=self.retry_backoff,
            description=description,
        )

    def plan(self, destroy: bool = False) -> Plan:
        """Build the plan.

        Args:
            destroy: Plan destruction of every persisted resource

        Raises:
            PlanError: If a reference cannot be resolved or a protected
                resource would be destroyed
            ProviderError: If a refresh or data source read fails
        """
        plan = Plan(manifest_name=self.manifest.name, destroy=destroy)
        self._refresh_state()

        if destroy:
            self._plan_destroy_all(plan)
            return plan

        # Undeclared resources go first, dependents before dependencies
        orphans = {a: r for a, r in self.document.resources.items() if a not in self.graph}
        for address in destroy_sequence(orphans):
            resource = orphans[address]
            plan.add(PlannedChange(
                address=address,
                type=resource.type,
                action=DESTROY,
                before=self._observed.get(address),
                drift=self._drift_for(resource),
                dependencies=sorted(resource.dependencies),
            ))

        resolver = Resolver(self.variables, self._lookup)
        for gnode in self.graph.create_order():
            if gnode.is_data:
                plan.add(self._plan_data(gnode.resource, resolver))
                plan.data_values[gnode.address] = self._values[gnode.address]
            else:
                plan.add(self._plan_resource(gnode.resource, resolver))

        plan.outputs = self._plan_outputs(resolver)
        logger.info(f"Plan for '{self.manifest.name}': " + ', '.join(
            f"{n} to {a}" for a, n in plan.summary().items() if n and a != NO_OP
        ) if plan.has_changes else f"Plan for '{self.manifest.name}': no changes")
        return plan

    def _refresh_state(self) -> None:
        """Read the live attributes of every persisted resource."""
        for address, resource in self.document.resources.items():
            if not self.refresh:
                self._observed[address] = dict(resource.attributes)
                continue
            observed = self._read(
                lambda r=resource: self.provider.read(r.type, r.id),
                f"refresh {address}",
            )
            if observed is None:
                logger.warning(f"{address} ({resource.id}) no longer exists")
            self._observed[address] = observed

    def _drift_for(self, resource: ResourceState) -> list[Drift]:
        observed = self._observed.get(resource.address)
        if observed is None:
            if self.refresh:
                return [Drift('id', resource.id, None)]
            return []
        return detect_drift(resource.attributes, observed)

    def _plan_destroy_all(self, plan: Plan) -> None:
        for address in destroy_sequence(self.document.resources):
            resource = self.document.resources[address]
            protected = resource.prevent_destroy
            if address in self.graph:
                protected = self.graph.get_node(address).resource.prevent_destroy
            if protected:
                raise PlanError(
                    f"Resource '{address}' has lifecycle.prevent_destroy set and cannot be destroyed"
                )
            if self._observed.get(address) is None and self.refresh:
                logger.info(f"{address} already gone, dropping from state on apply")
            plan.add(PlannedChange(
                address=address,
                type=resource.type,
                action=DESTROY,
                before=self._observed.get(address),
                drift=self._drift_for(resource),
                dependencies=sorted(resource.dependencies),
            ))

    def _resolve(self, node: ResourceNode, resolver: Resolver) -> dict:
        try:
            return resolver.resolve(node.attributes)
        except InterpolationError as e:
            raise PlanError(f"{node.address}: {e}")

    def _plan_data(self, node: ResourceNode, resolver: Resolver) -> PlannedChange:
        attributes = self._resolve(node, resolver)
        if contains_unknown(attributes):
            raise PlanError(f"{node.address}: data source arguments are not known at plan time")
        observed = self._read(
            lambda: self.provider.read_data(node.type, attributes),
            f"read {node.address}",
        )
        values = dict(attributes)
        values.update(observed)
        self._values[node.address] = values
        return PlannedChange(
            address=node.address,
            type=node.type,
            action=READ,
            after=values,
            dependencies=sorted(self.graph.dependencies(node.address)),
        )

    def _plan_resource(self, node: ResourceNode, resolver: Resolver) -> PlannedChange:
        schema = schema_or_default(node.type)
        declared = self._resolve(node, resolver)
        persisted = self.document.get(node.address)
        observed = self._observed.get(node.address)

        change = PlannedChange(
            address=node.address,
            type=node.type,
            action=NO_OP,
            before=observed,
            dependencies=sorted(self.graph.dependencies(node.address)),
        )

        if persisted is None:
            change.action = CREATE
            change.changed = sorted(declared)
        elif observed is None:
            change.action = CREATE
            change.changed = sorted(declared)
            change.drift = self._drift_for(persisted)
        else:
            change.drift = self._drift_for(persisted)
            change.changed = diff_attributes(declared, observed, schema)
            change.replace_reasons = [a for a in change.changed if a in schema.force_new]
            if change.replace_reasons:
                change.action = REPLACE
            elif change.changed:
                change.action = UPDATE

        if change.action == REPLACE and node.prevent_destroy:
            raise PlanError(
                f"Resource '{node.address}' has lifecycle.prevent_destroy set but "
                f"changes to {', '.join(change.replace_reasons)} require replacement"
            )

        after = dict(declared)
        for attr in schema.computed:
            if change.action in (CREATE, REPLACE):
                after[attr] = UNKNOWN
            elif observed is not None and attr in observed:
                after[attr] = observed[attr]
        change.after = after
        self._values[node.address] = after
        return change

    def _plan_outputs(self, resolver: Resolver) -> dict[str, Any]:
        outputs = {}
        for name, expr in self.manifest.outputs.items():
            try:
                outputs[name] = resolver.resolve(expr)
            except InterpolationError as e:
                raise PlanError(f"Output '{name}': {e}")
        return outputs


def format_plan(plan: Plan, show_no_op: bool = False) -> list[str]:
    """Render a plan as human-readable lines."""
    lines = []
    for change in plan.ordered():
        if change.action == NO_OP and not show_no_op:
            continue
        symbol = _SYMBOLS.get(change.action, '?')
        line = f"  {symbol:>3} {change.address} ({change.action})"
        if change.replace_reasons:
            line += f" forced by: {', '.join(change.replace_reasons)}"
        elif change.action == UPDATE and change.changed:
            line += f" changing: {', '.join(change.changed)}"
        lines.append(line)
        for d in change.drift:
            lines.append(f"        drift {d.attribute}: {d.persisted!r} -> {d.observed!r}")

    counts = plan.summary()
    lines.append("")
    lines.append(
        f"Plan: {counts[CREATE]} to create, {counts[UPDATE]} to update, "
        f"{counts[REPLACE]} to replace, {counts[DESTROY]} to destroy."
    )
    return lines

"""Plan executor for manifest-based orchestration.

Executes the mutating changes of a Plan against a provider:

1. Destroys of resources that are no longer declared, and of the old
   instances of replaced resources, dependents first
2. Creates, updates and the new instances of replaced resources,
   dependencies first

Within each phase, independent nodes run concurrently on a thread pool
bounded by the configured parallelism. A node is submitted only once every
node it waits on has succeeded; when a node fails, everything that depends
on it is skipped. Persisted state is saved after every completed node so an
interrupted run leaves state that matches what was actually created.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from common import ActionResult, call_with_retry, wait_until
from config import EngineConfig
from interpolation import UNKNOWN, InterpolationError, Resolver, contains_unknown
from manifest import Manifest
from manifest_opr.backend import ResourceState, StateBackend, StateDocument, StateError
from manifest_opr.graph import ResourceGraph
from manifest_opr.plan import CREATE, DESTROY, REPLACE, UPDATE, Plan, PlannedChange, format_plan
from manifest_opr.state import RunState
from providers.base import Provider, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """A node could not be brought to its planned state."""


@dataclass
class PlanExecutor:
    """Applies a Plan, persisting state after each node.

    Attributes:
        manifest: The manifest the plan was computed from
        graph: Dependency graph of the manifest
        plan: The plan to execute
        provider: Provider that performs the CRUD calls
        backend: State backend (already locked by the caller)
        document: State document loaded under the lock
        config: Engine configuration (parallelism, retries, readiness)
        variables: Resolved manifest variables
        dry_run: If True, print the plan instead of executing it
        cancel: Set from another thread to stop submitting new nodes
    """
    manifest: Manifest
    graph: ResourceGraph
    plan: Plan
    provider: Provider
    backend: StateBackend
    document: StateDocument
    config: EngineConfig
    variables: dict = field(default_factory=dict)
    dry_run: bool = False
    cancel: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        self._state_lock = threading.Lock()
        self._failed: set[str] = set()
        self._stopped = False

    def apply(self) -> tuple[bool, RunState]:
        """Execute every mutating change in the plan.

        Returns:
            Tuple of (success, run_state)
        """
        operation = 'destroy' if self.plan.destroy else 'apply'
        state = RunState(self.manifest.name, operation)
        state.start()

        changes = self.plan.mutating()
        for change in changes:
            state.add_node(change.address, change.action)

        if self.dry_run:
            self._preview()
            state.finish()
            return True, state

        if not changes:
            logger.info(f"No changes for '{self.manifest.name}'")

        # A replace contributes a destroy step here and a create step below
        removals = [c for c in changes if c.action in (DESTROY, REPLACE)]
        self._run_phase(removals, self._destroy_waits(removals), state, destroy_phase=True)

        others = [c for c in changes if c.action != DESTROY and c.address not in self._failed]
        if others:
            if self._stopped or self.cancel.is_set():
                self._skip_all(others, state, 'run stopped before apply phase')
            else:
                self._run_phase(others, self._apply_waits(others), state, destroy_phase=False)

        self._save_outputs()
        if self.cancel.is_set():
            state.cancelled = True

        state.finish()
        logger.info(f"{operation.capitalize()} of '{self.manifest.name}' finished: {state.summary()}")
        return state.success, state

    # -------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------

    def _destroy_waits(self, changes: list[PlannedChange]) -> dict[str, set[str]]:
        """A removal waits for the removals of everything depending on it."""
        addresses = {c.address for c in changes}
        waits: dict[str, set[str]] = {a: set() for a in addresses}
        for change in changes:
            for dep in change.dependencies:
                if dep in addresses:
                    waits[dep].add(change.address)
        return waits

    def _apply_waits(self, changes: list[PlannedChange]) -> dict[str, set[str]]:
        """A create/update/replace waits for its changed dependencies.

        Dependencies whose removal already failed stay in the waits so the
        dependent is skipped rather than created against a stale resource.
        """
        addresses = {c.address for c in changes} | self._failed
        return {c.address: set(c.dependencies) & addresses for c in changes}

    def _skip_all(self, changes: list[PlannedChange], state: RunState, reason: str) -> None:
        for change in changes:
            state.get_node(change.address).skip(reason)
            self._failed.add(change.address)

    def _skip_blocked(self, pending: dict[str, PlannedChange], waits: dict[str, set[str]],
                      state: RunState) -> None:
        """Skip pending nodes whose prerequisites failed, until nothing changes."""
        changed = True
        while changed:
            changed = False
            for address in list(pending):
                blocked = waits[address] & self._failed
                if blocked:
                    reason = f"dependency '{sorted(blocked)[0]}' did not complete"
                    state.get_node(address).skip(reason)
                    logger.warning(f"Skipping {address}: {reason}")
                    self._failed.add(address)
                    del pending[address]
                    changed = True

    def _run_phase(self, changes: list[PlannedChange], waits: dict[str, set[str]],
                   state: RunState, destroy_phase: bool) -> None:
        if not changes:
            return
        pending = {c.address: c for c in changes}
        running: dict[Future, str] = {}
        done: set[str] = set()

        with ThreadPoolExecutor(max_workers=self.config.parallelism) as pool:
            while pending or running:
                self._skip_blocked(pending, waits, state)

                if self._stopped or self.cancel.is_set():
                    reason = 'run cancelled' if self.cancel.is_set() else 'run stopped after failure'
                    self._skip_all(list(pending.values()), state, reason)
                    pending.clear()
                else:
                    ready = [a for a in pending if waits[a] <= done]
                    for address in ready:
                        if len(running) >= self.config.parallelism:
                            break
                        change = pending.pop(address)
                        state.get_node(address).start()
                        running[pool.submit(self._execute, change, destroy_phase)] = address

                if not running:
                    if pending:
                        # Nothing running and nothing ready: remaining waits can never be met
                        self._skip_all(list(pending.values()), state, 'unsatisfiable dependencies')
                        pending.clear()
                    break

                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    address = running.pop(future)
                    if self._record(address, future.result(), state, destroy_phase):
                        done.add(address)

    def _record(self, address: str, result: ActionResult, state: RunState,
                destroy_phase: bool) -> bool:
        node_state = state.get_node(address)
        if result.success:
            if node_state.action == DESTROY:
                node_state.mark_destroyed()
            elif destroy_phase:
                # Old instance of a replacement is gone; the create step follows
                logger.info(f"[{node_state.action}] {address} old instance destroyed "
                            f"({result.duration:.1f}s)")
                return True
            else:
                node_state.complete(result.attributes.get('id'))
            logger.info(f"[{node_state.action}] {address} done ({result.duration:.1f}s)")
            return True

        node_state.fail(result.message)
        self._failed.add(address)
        logger.error(f"[{node_state.action}] {address} failed: {result.message}")
        if self.config.on_error == 'stop':
            self._stopped = True
        return False

    # -------------------------------------------------------------------
    # Per-node operations
    # -------------------------------------------------------------------

    def _execute(self, change: PlannedChange, destroy_phase: bool = False) -> ActionResult:
        """Run one step of a change on a worker thread; never raises."""
        start = time.time()
        try:
            if destroy_phase:
                attributes = self._destroy(change)
            elif change.action in (CREATE, REPLACE):
                attributes = self._create(change)
            elif change.action == UPDATE:
                attributes = self._update(change)
            else:
                raise ValueError(f"Unsupported action '{change.action}'")
        except (ProviderError, InterpolationError, StateError, ExecutionError) as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)
        except Exception as e:
            logger.exception(f"Unexpected error executing {change.address}")
            return ActionResult(success=False, message=f"{type(e).__name__}: {e}",
                                duration=time.time() - start)
        return ActionResult(success=True, duration=time.time() - start, attributes=attributes)

    def _call(self, func, description: str):
        return call_with_retry(
            func,
            retry_on=(TransientProviderError,),
            retries=self.config.retries,
            backoff=self.config.retry_backoff,
            description=description,
        )

    def _lookup(self, address: str):
        if address in self.plan.data_values:
            return self.plan.data_values[address]
        resource = self.document.get(address)
        if resource is not None:
            return resource.attributes
        if address in self.graph:
            return UNKNOWN
        return None

    def _declared(self, change: PlannedChange) -> dict:
        """Resolve a node's attributes against realized state."""
        node = self.graph.get_node(change.address).resource
        attributes = Resolver(self.variables, self._lookup).resolve(node.attributes)
        if contains_unknown(attributes):
            raise ExecutionError(f"{change.address}: attribute values are still unknown")
        return attributes

    def _create(self, change: PlannedChange) -> dict:
        attributes = self._declared(change)
        logger.info(f"[create] {change.address}")
        realized = self._call(
            lambda: self.provider.create(change.type, attributes),
            f"create {change.address}",
        )
        # Persist before waiting so an interrupted run still tracks the resource
        self._persist(change.address, realized)
        return self._settle(change, realized)

    def _update(self, change: PlannedChange) -> dict:
        attributes = self._declared(change)
        resource_id = self.document.get(change.address).id
        logger.info(f"[update] {change.address} ({', '.join(change.changed)})")
        realized = self._call(
            lambda: self.provider.update(change.type, resource_id, attributes),
            f"update {change.address}",
        )
        self._persist(change.address, realized)
        return self._settle(change, realized)

    def _destroy(self, change: PlannedChange) -> dict:
        resource = self.document.get(change.address)
        if resource is None:
            return {}
        logger.info(f"[destroy] {change.address} ({resource.id})")
        self._call(
            lambda: self.provider.delete(resource.type, resource.id),
            f"destroy {change.address}",
        )
        with self._state_lock:
            self.document.remove(change.address)
            self.backend.save(self.document)
        return {'id': resource.id}

    def _settle(self, change: PlannedChange, realized: dict) -> dict:
        """Wait for readiness, then record the attributes the provider reports."""
        resource_id = realized['id']
        ready = wait_until(
            lambda: self._call(
                lambda: self.provider.is_ready(change.type, resource_id),
                f"readiness of {change.address}",
            ),
            timeout=self.config.ready_timeout,
            interval=self.config.ready_interval,
            description=f"{change.address} to become ready",
            cancel=self.cancel,
        )
        if not ready:
            if self.cancel.is_set():
                raise ExecutionError(f"{change.address}: cancelled while waiting for readiness")
            raise ExecutionError(
                f"{change.address} did not become ready within {self.config.ready_timeout}s"
            )

        current = self._call(
            lambda: self.provider.read(change.type, resource_id),
            f"read {change.address}",
        )
        if current is None:
            raise ExecutionError(f"{change.address} ({resource_id}) disappeared after apply")
        self._persist(change.address, current)
        return current

    def _persist(self, address: str, attributes: dict) -> None:
        node = self.graph.get_node(address).resource
        resource = ResourceState(
            address=address,
            type=node.type,
            name=node.name,
            id=str(attributes['id']),
            attributes=dict(attributes),
            dependencies=sorted(self.graph.dependencies(address)),
            prevent_destroy=node.prevent_destroy,
        )
        with self._state_lock:
            self.document.set(resource)
            self.backend.save(self.document)

    def _save_outputs(self) -> None:
        """Resolve outputs against realized state and persist them."""
        outputs: dict[str, Any] = {}
        if not self.plan.destroy:
            resolver = Resolver(self.variables, self._lookup)
            for name, expr in self.manifest.outputs.items():
                try:
                    value = resolver.resolve(expr)
                except InterpolationError as e:
                    logger.warning(f"Output '{name}' not available: {e}")
                    continue
                if contains_unknown(value):
                    logger.warning(f"Output '{name}' not available: depends on a resource that was not applied")
                    continue
                outputs[name] = value

        with self._state_lock:
            if outputs == self.document.outputs and not self.plan.has_changes:
                return
            self.document.outputs = outputs
            self.backend.save(self.document)

    # -------------------------------------------------------------------
    # Dry-run
    # -------------------------------------------------------------------

    def _preview(self) -> None:
        """Print the plan without executing it."""
        title = 'DESTROY' if self.plan.destroy else 'APPLY'
        print("")
        print("=" * 65)
        print(f"  DRY-RUN {title}: {self.manifest.name}")
        print(f"  Provider: {self.provider.name}")
        print(f"  State: {self.backend.describe()}")
        print("=" * 65)
        print("")
        for line in format_plan(self.plan):
            print(line)
        print("")

"""Engine facade: plan, apply and destroy a manifest under the state lock."""

import logging
import threading
from typing import Optional

from config import EngineConfig
from manifest import Manifest
from manifest_opr.backend import StateBackend, get_backend
from manifest_opr.executor import PlanExecutor
from manifest_opr.graph import ResourceGraph
from manifest_opr.plan import Plan, Planner
from manifest_opr.state import RunState
from providers import get_provider
from providers.base import Provider

logger = logging.getLogger(__name__)


class Engine:
    """Reconciles one manifest with its persisted state.

    The graph is built (and cycles rejected) in the constructor, before the
    provider or the state backend is touched.

    Args:
        config: Engine configuration
        manifest: Manifest to reconcile
        provider: Provider override (default: from config)
        backend: State backend override (default: from config)
        variables: Variable overrides (e.g. from --var)
    """

    def __init__(
        self,
        config: EngineConfig,
        manifest: Manifest,
        provider: Optional[Provider] = None,
        backend: Optional[StateBackend] = None,
        variables: Optional[dict] = None,
    ):
        self.config = config
        self.manifest = manifest
        self.variables = manifest.resolve_variables(variables)
        self.graph = ResourceGraph(manifest)
        self.provider = provider or get_provider(config)
        self.backend = backend or get_backend(config, manifest.name)

    def _planner(self, document, refresh: bool) -> Planner:
        return Planner(
            self.manifest,
            self.graph,
            document,
            self.provider,
            self.variables,
            refresh=refresh,
            retries=self.config.retries,
            retry_backoff=self.config.retry_backoff,
        )

    def plan(self, destroy: bool = False, refresh: bool = True) -> Plan:
        """Compute a plan without changing anything."""
        with self.backend.lock('plan'):
            document = self.backend.load()
            return self._planner(document, refresh).plan(destroy=destroy)

    def apply(
        self,
        destroy: bool = False,
        dry_run: bool = False,
        cancel: Optional[threading.Event] = None,
        refresh: bool = True,
    ) -> tuple[bool, Plan, RunState]:
        """Plan and execute under a single lock.

        Returns:
            Tuple of (success, plan, run_state)
        """
        operation = 'destroy' if destroy else 'apply'
        with self.backend.lock(operation):
            document = self.backend.load()
            plan = self._planner(document, refresh).plan(destroy=destroy)
            executor = PlanExecutor(
                manifest=self.manifest,
                graph=self.graph,
                plan=plan,
                provider=self.provider,
                backend=self.backend,
                document=document,
                config=self.config,
                variables=self.variables,
                dry_run=dry_run,
                cancel=cancel or threading.Event(),
            )
            success, run_state = executor.apply()
        return success, plan, run_state

    def destroy(self, dry_run: bool = False,
                cancel: Optional[threading.Event] = None) -> tuple[bool, Plan, RunState]:
        """Destroy every resource recorded in state."""
        return self.apply(destroy=True, dry_run=dry_run, cancel=cancel)

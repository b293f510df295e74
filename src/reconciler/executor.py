"""Plan executor for manifest-based reconciliation.

Applies a Plan against provider adapters with a bounded worker pool:
- an action is dispatched once every action it depends on is terminal
- runnable actions are dispatched in plan order, at most N in flight
- transient provider errors are retried with exponential backoff
- a failed node blocks every node with a dependency path through it;
  unrelated nodes continue and the run ends as a partial success

State is written only after the provider confirmed the operation, with
the version observed at plan time, so external changes surface as drift.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from config import EngineSettings
from manifest import Reference, substitute_references
from providers.base import NotFoundError, ProviderError
from providers.registry import ProviderRegistry
from reconciler.errors import ConfigurationError, DriftError, InternalError
from reconciler.graph import NodeStatus
from reconciler.planner import ActionType, Plan, ResourceAction
from reconciler.state import StateRecord, StateStore

logger = logging.getLogger(__name__)

# How often the scheduler re-checks the abort signal and deadline while
# provider calls are in flight
POLL_INTERVAL = 0.1


@dataclass
class ApplyResult:
    """Outcome of executing a plan. Lists follow plan order."""
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'applied': list(self.applied),
            'failed': list(self.failed),
            'blocked': list(self.blocked),
            'skipped': list(self.skipped),
            'unchanged': list(self.unchanged),
            'deleted': list(self.deleted),
            'cancelled': list(self.cancelled),
            'errors': dict(self.errors),
            'duration_seconds': round(self.duration, 2),
        }


@dataclass
class _Outcome:
    """Result of one provider round-trip, produced on a worker thread."""
    node_id: str
    success: bool
    record: Optional[StateRecord] = None
    error: str = ''
    attempts: int = 0


class _MissingOutput(Exception):
    def __init__(self, ref: Reference):
        self.ref = ref
        super().__init__(f"Resource '{ref.node_id}' has no output '{ref.output_key}'")


@dataclass
class Executor:
    """Executes a plan with bounded concurrency.

    Attributes:
        plan: Plan produced by the Planner
        registry: Provider adapters and the shared ProviderContext
        store: State store written after each confirmed provider call
        settings: Concurrency and retry settings
        abort: Set to stop dispatching new nodes (in-flight nodes finish)
        dry_run: If True, preview the plan without executing
        sleep: Backoff sleep function (injectable for tests)
    """
    plan: Plan
    registry: ProviderRegistry
    store: StateStore
    settings: EngineSettings = field(default_factory=EngineSettings)
    abort: Optional[threading.Event] = None
    dry_run: bool = False
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        self._actions: dict[str, ResourceAction] = {a.node_id: a for a in self.plan.actions}
        if len(self._actions) != len(self.plan.actions):
            raise InternalError("Plan contains more than one action for a resource")
        self._status: dict[str, NodeStatus] = {i: NodeStatus.PENDING for i in self._actions}
        self._records: dict[str, StateRecord] = {}
        self._dependents: dict[str, list[str]] = {i: [] for i in self._actions}
        for action in self.plan.actions:
            for dep in action.depends_on:
                if dep not in self._actions:
                    raise InternalError(
                        f"Action for '{action.node_id}' depends on '{dep}', which has no action"
                    )
                self._dependents[dep].append(action.node_id)
        self._deadline_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Status bookkeeping
    # ------------------------------------------------------------------

    def _set_status(self, node_id: str, status: NodeStatus) -> None:
        self._status[node_id] = status
        graph = self.plan.graph
        if graph is not None and node_id in graph:
            graph.get_node(node_id).status = status

    def _block_dependents(self, node_id: str, result: ApplyResult) -> None:
        """Mark every pending node with a dependency path through node_id BLOCKED."""
        pending = list(self._dependents[node_id])
        while pending:
            current = pending.pop()
            if self._status[current] != NodeStatus.PENDING:
                continue
            self._set_status(current, NodeStatus.BLOCKED)
            result.errors[current] = f"blocked by '{node_id}'"
            logger.warning(f"Resource '{current}' blocked by failed '{node_id}'")
            pending.extend(self._dependents[current])

    def _fail(self, node_id: str, message: str, result: ApplyResult) -> None:
        self._set_status(node_id, NodeStatus.FAILED)
        result.errors[node_id] = message
        logger.error(f"[{self._actions[node_id].action.value}] Resource '{node_id}' failed: {message}")
        self._block_dependents(node_id, result)

    def _is_runnable(self, node_id: str) -> bool:
        return all(self._status[d].is_terminal for d in self._actions[node_id].depends_on)

    def _stopping(self) -> bool:
        if self.abort is not None and self.abort.is_set():
            return True
        return self._deadline_at is not None and time.monotonic() >= self._deadline_at

    # ------------------------------------------------------------------
    # Output propagation
    # ------------------------------------------------------------------

    def _resolve_attributes(self, node_id: str) -> dict:
        """Resolve output bindings into final attribute values.

        Raises:
            InternalError: If a producer has not reached APPLIED
            _MissingOutput: If an applied producer lacks the output key
        """
        graph = self.plan.graph
        if graph is None:
            raise InternalError(f"Cannot apply '{node_id}' without a dependency graph")
        node = graph.get_node(node_id)
        for binding in graph.bindings_for(node_id):
            if self._status[binding.producer_id] != NodeStatus.APPLIED \
                    or binding.producer_id not in self._records:
                raise InternalError(
                    f"Resource '{node_id}' dispatched with unresolved binding "
                    f"'{binding.producer_id}.{binding.output_key}'"
                )

        def _resolve(ref: Reference) -> Any:
            try:
                return self._records[ref.node_id].output(ref.output_key)
            except KeyError:
                raise _MissingOutput(ref) from None

        return substitute_references(node.resource.attributes, _resolve)

    # ------------------------------------------------------------------
    # Per-node apply (runs on worker threads)
    # ------------------------------------------------------------------

    def _call_with_retry(self, node_id: str, operation: str, call: Callable[[], Any]) -> tuple[Any, int]:
        """Invoke a provider call, retrying transient errors.

        Returns:
            (call result, attempts used)

        Raises:
            ProviderError: Permanent error, or transient error after the last attempt
        """
        max_attempts = self.settings.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return call(), attempt
            except ProviderError as e:
                if not e.transient or attempt >= max_attempts:
                    e.attempts = attempt
                    raise
                delay = self.settings.backoff_delay(attempt)
                logger.warning(
                    "[%s] Resource '%s' transient error (attempt %d/%d), retrying in %.1fs: %s",
                    operation, node_id, attempt, max_attempts, delay, e.message,
                )
                self.sleep(delay)
        raise InternalError("retry loop exited without result")

    def _apply_node(self, action: ResourceAction, attributes: Optional[dict]) -> _Outcome:
        """Provider call, then state write. Never writes before confirmation."""
        node_id = action.node_id
        adapter = self.registry.get(action.resource_kind)
        ctx = self.registry.context
        record = self.plan.snapshot.get(node_id)
        op = action.action.value
        start = time.time()
        logger.info(f"[{op}] Applying resource '{node_id}' ({action.resource_kind})")

        try:
            if action.action == ActionType.CREATE:
                (observed, provider_id), attempts = self._call_with_retry(
                    node_id, op, lambda: adapter.create(ctx, attributes))
            elif action.action == ActionType.UPDATE:
                provider_id = record.provider_id
                observed, attempts = self._call_with_retry(
                    node_id, op, lambda: adapter.update(ctx, provider_id, attributes))
            elif action.action == ActionType.DELETE:
                attempts = 0
                if record is not None and record.provider_id is not None:
                    try:
                        _, attempts = self._call_with_retry(
                            node_id, op, lambda: adapter.delete(ctx, record.provider_id))
                    except NotFoundError:
                        logger.info(f"[delete] Resource '{node_id}' already absent at provider")
            else:
                raise InternalError(f"Action '{op}' is not dispatched to a provider")
        except ProviderError as e:
            kind = 'transient' if e.transient else 'permanent'
            return _Outcome(node_id, False, error=f"{kind} provider error: {e.message}",
                            attempts=e.attempts)
        except InternalError:
            raise
        except Exception as e:
            # Adapter faults stay confined to the node like provider errors
            logger.exception(f"[{op}] Adapter for '{action.resource_kind}' raised unexpectedly")
            return _Outcome(node_id, False, error=f"adapter error: {type(e).__name__}: {e}")

        try:
            if action.action == ActionType.DELETE:
                self.store.delete(node_id, action.expected_version)
                stored = None
            else:
                stored = self.store.put(node_id, StateRecord(
                    id=node_id,
                    kind=action.resource_kind,
                    last_attributes=attributes,
                    provider_id=provider_id,
                    outputs=dict(observed or {}),
                    dependencies=list(action.depends_on),
                ), expected_version=action.expected_version)
        except DriftError as e:
            return _Outcome(node_id, False, error=str(e), attempts=attempts)

        logger.info(f"[{op}] Resource '{node_id}' done in {time.time() - start:.1f}s")
        return _Outcome(node_id, True, record=stored, attempts=attempts)

    # ------------------------------------------------------------------
    # Scheduling (main thread)
    # ------------------------------------------------------------------

    def _complete(self, outcome: _Outcome, result: ApplyResult) -> None:
        action = self._actions[outcome.node_id]
        if not outcome.success:
            self._fail(outcome.node_id, outcome.error, result)
            return
        self._set_status(outcome.node_id, NodeStatus.APPLIED)
        if action.action == ActionType.DELETE:
            result.deleted.append(outcome.node_id)
        else:
            self._records[outcome.node_id] = outcome.record
            result.applied.append(outcome.node_id)

    def _settle_local(self, node_id: str, result: ApplyResult) -> bool:
        """Finish actions that need no provider call. Returns True if handled."""
        action = self._actions[node_id]
        if action.action == ActionType.SKIP:
            self._set_status(node_id, NodeStatus.SKIPPED)
            result.skipped.append(node_id)
            return True
        if action.action == ActionType.NOOP:
            record = self.plan.snapshot.get(node_id)
            if record is None:
                raise InternalError(f"No-op planned for '{node_id}' without a state record")
            self._records[node_id] = record
            self._set_status(node_id, NodeStatus.APPLIED)
            result.unchanged.append(node_id)
            return True
        return False

    def _check_adapters(self) -> None:
        kinds = [a.resource_kind for a in self.plan.actions
                 if a.action in (ActionType.CREATE, ActionType.UPDATE, ActionType.DELETE)]
        missing = self.registry.missing_kinds(kinds)
        if missing:
            raise ConfigurationError(
                f"No provider adapter configured for kind(s): {', '.join(missing)}"
            )

    def run(self) -> ApplyResult:
        """Execute the plan.

        Returns:
            ApplyResult; provider and drift errors never abort the run

        Raises:
            ConfigurationError: If an action's kind has no adapter (before any call)
            InternalError: If an engine invariant is violated
        """
        result = ApplyResult()
        if self.dry_run:
            self.preview()
            return result

        self._check_adapters()
        start = time.time()
        if self.settings.deadline is not None:
            self._deadline_at = time.monotonic() + float(self.settings.deadline)
        poll = POLL_INTERVAL if (self.abort is not None or self._deadline_at is not None) else None

        pending = [a.node_id for a in self.plan.actions]
        in_flight: dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.settings.concurrency,
                                thread_name_prefix='reconcile') as pool:
            while True:
                if not self._stopping():
                    progressed = True
                    while progressed:
                        progressed = False
                        for node_id in list(pending):
                            if self._status[node_id] != NodeStatus.PENDING:
                                pending.remove(node_id)
                                continue
                            if not self._is_runnable(node_id):
                                continue
                            if self._settle_local(node_id, result):
                                pending.remove(node_id)
                                progressed = True
                                continue
                            if len(in_flight) >= self.settings.concurrency:
                                continue
                            action = self._actions[node_id]
                            attributes = None
                            if action.action != ActionType.DELETE:
                                try:
                                    attributes = self._resolve_attributes(node_id)
                                except _MissingOutput as e:
                                    pending.remove(node_id)
                                    self._fail(node_id, str(e), result)
                                    progressed = True
                                    continue
                            pending.remove(node_id)
                            self._set_status(node_id, NodeStatus.APPLYING)
                            future = pool.submit(self._apply_node, action, attributes)
                            in_flight[future] = node_id

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=poll, return_when=FIRST_COMPLETED)
                for future in done:
                    node_id = in_flight.pop(future)
                    self._complete(future.result(), result)

        leftover = [n for n in pending if self._status[n] == NodeStatus.PENDING]
        if leftover and not self._stopping():
            raise InternalError(f"Scheduler finished with undispatched resources: {', '.join(leftover)}")
        if leftover:
            logger.warning(f"Run stopped before dispatching: {', '.join(leftover)}")
        result.cancelled = leftover

        result.blocked = [i for i, s in self._status.items() if s == NodeStatus.BLOCKED]
        result.failed = [i for i, s in self._status.items() if s == NodeStatus.FAILED]
        order = {a.node_id: i for i, a in enumerate(self.plan.actions)}
        for name in ('applied', 'skipped', 'unchanged', 'deleted', 'cancelled'):
            getattr(result, name).sort(key=order.__getitem__)
        result.duration = time.time() - start

        logger.info(
            "Apply finished: %d applied, %d deleted, %d unchanged, %d skipped, "
            "%d failed, %d blocked, %d cancelled",
            len(result.applied), len(result.deleted), len(result.unchanged),
            len(result.skipped), len(result.failed), len(result.blocked),
            len(result.cancelled),
        )
        return result

    def preview(self) -> None:
        """Print the operations a run would perform."""
        print(f"\nDRY-RUN: {len(self.plan.actions)} action(s)")
        for action in self.plan.actions:
            line = f"  {action.action.value.upper():<7} {action.node_id} ({action.resource_kind})"
            if action.depends_on:
                line += f" after {', '.join(action.depends_on)}"
            print(line)
        print()

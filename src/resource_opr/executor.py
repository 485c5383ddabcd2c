"""Plan executor for resource orchestration.

Runs a Plan against registered provider adapters one dependency level at a
time. Actions within a level run concurrently on a thread pool; the next
level starts only after every action of the current level has terminated.

Failure containment: a permanently failed action marks its resource failed
in state, every action that waits on it (directly or transitively) is
reported blocked, and independent branches continue.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from declarations import Reference, resolve_references
from resource_opr.errors import (
    PermanentProviderError,
    ProviderError,
    ResourceNotFoundError,
    StateConflictError,
    TransientProviderError,
)
from resource_opr.planner import CREATE, DELETE, NOOP, UPDATE, Action, Plan, Planner
from resource_opr.providers import ProviderRegistry
from resource_opr.report import APPLIED, BLOCKED, FAILED, UNCHANGED, ExecutionReport
from resource_opr.state import TAINTED, StateEntry, StateStore
from resource_opr.state import APPLIED as ENTRY_APPLIED
from resource_opr.state import FAILED as ENTRY_FAILED

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors.

    Attributes:
        attempts: Maximum number of calls (including the first)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
    """
    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


@dataclass
class _Outcome:
    ok: bool = False
    message: str = ''
    attempts: int = 0
    duration: float = 0.0


class Executor:
    """Executes plans, destroys and refreshes against a ProviderRegistry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        max_workers: int = 4,
        retry: Optional[RetryPolicy] = None,
        run_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.max_workers = max(1, max_workers)
        self.retry = retry or RetryPolicy()
        self.run_timeout = run_timeout
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop starting new actions; in-flight actions finish or fail.

        May be called before a run starts (e.g. while it waits for the run
        lock); the request then applies to that run. The flag is cleared when
        a run ends.
        """
        if not self._cancel.is_set():
            logger.warning("Cancellation requested, waiting for in-flight actions")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # -- public operations ----------------------------------------------

    def apply(self, plan: Plan, store: StateStore) -> ExecutionReport:
        """Execute a plan, committing each successful action to state.

        Raises:
            StateConflictError: Lock held elsewhere, stale plan, or state
                modified out-of-band during the run
        """
        operation = 'destroy' if plan.destroy else 'apply'
        with self._run_scope(), store.run_lock():
            if plan.state_serial != store.serial:
                raise StateConflictError(
                    f"Plan is stale: computed at serial {plan.state_serial}, "
                    f"state is at serial {store.serial}. Re-run plan."
                )
            report = self._run(plan, store, operation)
            if not plan.destroy and report.success:
                store.record_order(list(plan.order))
        return report

    def destroy(self, store: StateStore) -> ExecutionReport:
        """Delete every resource in state, dependents first.

        Raises:
            StateConflictError: Lock held elsewhere or state modified
                out-of-band during the run
        """
        with self._run_scope(), store.run_lock():
            plan = Planner(self.registry.immutable_attributes).plan_destroy(store.snapshot())
            return self._run(plan, store, 'destroy')

    def refresh(self, store: StateStore) -> ExecutionReport:
        """Re-read every created resource from its provider.

        Provider attributes are updated in state; resources the provider no
        longer knows are marked tainted so the next plan replaces them.
        """
        report = ExecutionReport('refresh')
        report.start()
        with self._run_scope(), store.run_lock():
            snapshot = store.snapshot()
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {
                    pool.submit(self._refresh_entry, entry, store): address
                    for address, entry in snapshot.entries.items()
                }
                for future, address in futures.items():
                    status, message = future.result()
                    report.record(address, 'read', status, message)
        report.finish()
        logger.info(f"[refresh] {len(report.applied)} changed, {len(report.failed)} failed")
        return report

    # -- level scheduling -----------------------------------------------

    @contextmanager
    def _run_scope(self) -> Iterator[None]:
        try:
            yield
        finally:
            self._cancel.clear()

    def _run(self, plan: Plan, store: StateStore, operation: str) -> ExecutionReport:
        report = ExecutionReport(operation)
        report.start()
        timer = None
        if self.run_timeout:
            timer = threading.Timer(self.run_timeout, self._on_timeout)
            timer.daemon = True
            timer.start()

        succeeded: set[str] = set()
        conflict: Optional[StateConflictError] = None
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                for number, level in enumerate(plan.levels()):
                    runnable = []
                    for action in level:
                        if action.type == NOOP:
                            report.record(action.address, NOOP, UNCHANGED)
                            continue
                        if self._cancel.is_set():
                            self._block(report, action, 'cancelled')
                            continue
                        failed = [d for d in action.depends_on if d not in succeeded]
                        if failed:
                            blockers = sorted({plan.get(d).address for d in failed})
                            self._block(report, action, f"blocked by {', '.join(blockers)}")
                            continue
                        runnable.append(action)
                    if not runnable:
                        continue

                    logger.info(f"[{operation}] Level {number}: {', '.join(a.id for a in runnable)}")
                    futures = {pool.submit(self._execute, action, store): action for action in runnable}
                    for future, action in self._settle(futures):
                        error = future.exception()
                        if isinstance(error, StateConflictError):
                            logger.error(f"[{operation}] State conflict during {action.id}: {error}")
                            conflict = conflict or error
                            self.cancel()
                            report.record(action.address, action.label, FAILED, str(error))
                            continue
                        if error is not None:
                            # Only state write failures get here
                            raise error
                        outcome = future.result()
                        if outcome.ok:
                            succeeded.add(action.id)
                            # The create half of a replacement reports for both
                            if not (action.replacing and action.type == DELETE):
                                report.record(action.address, action.label, APPLIED,
                                              duration=outcome.duration, attempts=outcome.attempts)
                        else:
                            report.record(action.address, action.label, FAILED, outcome.message,
                                          outcome.duration, outcome.attempts)
        finally:
            if timer:
                timer.cancel()

        report.finish(cancelled=self._cancel.is_set())
        logger.info(
            f"[{operation}] {report.outcome}: {len(report.applied)} applied, "
            f"{len(report.failed)} failed, {len(report.blocked)} blocked"
        )
        if conflict:
            raise conflict
        return report

    def _settle(self, futures: dict[Future, Action]):
        """Yield (future, action) as each completes; Ctrl-C cancels the run."""
        pending = set(futures)
        while pending:
            try:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
            except KeyboardInterrupt:
                self.cancel()
                continue
            for future in done:
                yield future, futures[future]

    def _block(self, report: ExecutionReport, action: Action, reason: str) -> None:
        # Keep the failure of a replacement's delete half visible
        if report.status_of(action.address) == FAILED:
            return
        logger.warning(f"Skipping {action.id}: {reason}")
        report.record(action.address, action.label, BLOCKED, reason)

    def _on_timeout(self) -> None:
        logger.error(f"Run timeout of {self.run_timeout}s exceeded")
        self.cancel()

    # -- single action --------------------------------------------------

    def _execute(self, action: Action, store: StateStore) -> _Outcome:
        """Run one action to completion; ProviderErrors become failed outcomes."""
        outcome = _Outcome()
        start = time.time()
        try:
            if action.type == CREATE:
                self._create(action, store, outcome)
            elif action.type == UPDATE:
                self._update(action, store, outcome)
            elif action.type == DELETE:
                self._delete(action, store, outcome)
            outcome.ok = True
        except ProviderError as e:
            outcome.message = str(e)
            logger.error(f"[{action.type}] {action.address} failed: {e}")
            self._record_failure(action, store, outcome.message)
        except KeyError as e:
            outcome.message = str(e).strip('"')
            logger.error(f"[{action.type}] {action.address} failed: {outcome.message}")
            self._record_failure(action, store, outcome.message)
        except StateConflictError:
            raise
        except Exception as e:
            # Unclassified adapter errors fail this action only
            outcome.message = f"{type(e).__name__}: {e}"
            logger.exception(f"[{action.type}] {action.address} raised an unexpected error")
            self._record_failure(action, store, outcome.message)
        outcome.duration = time.time() - start
        return outcome

    def _create(self, action: Action, store: StateStore, outcome: _Outcome) -> None:
        adapter = self.registry.get(action.kind)
        attributes = self._resolve(action.attributes, store)
        logger.info(f"[create] {action.address}")
        provider_attrs = self._call(lambda: adapter.create(attributes), action.id, outcome)
        store.commit(StateEntry(
            kind=action.kind,
            name=action.name,
            status=ENTRY_APPLIED,
            attributes=dict(action.attributes),
            provider_attributes=dict(provider_attrs or {}),
        ))

    def _update(self, action: Action, store: StateStore, outcome: _Outcome) -> None:
        adapter = self.registry.get(action.kind)
        entry = store.get(action.address)
        if entry is None or entry.resource_id is None:
            raise PermanentProviderError(f"{action.address} has no provider id to update")
        resolved = self._resolve(action.attributes, store)
        changed = {key: resolved.get(key) for key in sorted(action.changed)}
        logger.info(f"[update] {action.address}: {', '.join(changed)}")
        provider_attrs = self._call(lambda: adapter.update(entry.resource_id, changed), action.id, outcome)
        entry.status = ENTRY_APPLIED
        entry.error = None
        entry.attributes = dict(action.attributes)
        entry.provider_attributes = {**entry.provider_attributes, **(provider_attrs or {})}
        store.commit(entry)

    def _delete(self, action: Action, store: StateStore, outcome: _Outcome) -> None:
        entry = store.get(action.address)
        if entry is None:
            return
        if entry.resource_id is not None:
            adapter = self.registry.get(action.kind)
            logger.info(f"[delete] {action.address} ({entry.resource_id})")
            try:
                self._call(lambda: adapter.delete(entry.resource_id), action.id, outcome)
            except ResourceNotFoundError:
                logger.warning(f"[delete] {action.address} already gone at provider")
        store.remove(action.address)

    def _record_failure(self, action: Action, store: StateStore, message: str) -> None:
        entry = store.get(action.address)
        if action.type == CREATE:
            store.commit(StateEntry(
                kind=action.kind,
                name=action.name,
                status=ENTRY_FAILED,
                attributes=dict(action.attributes),
                error=message,
            ))
        elif entry is not None:
            store.mark(action.address, ENTRY_FAILED, message)

    def _call(self, func: Callable[[], Any], label: str, outcome: _Outcome) -> Any:
        """Call the provider, retrying transient errors with backoff.

        Raises:
            PermanentProviderError: Retries exhausted or run cancelled
            ProviderError: Any non-transient provider error, unchanged
        """
        while True:
            outcome.attempts += 1
            try:
                return func()
            except TransientProviderError as e:
                if outcome.attempts >= self.retry.attempts:
                    logger.error(f"[{label}] giving up after {outcome.attempts} attempts")
                    raise PermanentProviderError(e.message) from e
                delay = self.retry.delay(outcome.attempts)
                logger.warning(
                    f"[{label}] {e} "
                    f"(attempt {outcome.attempts}/{self.retry.attempts}, retrying in {delay:.1f}s)"
                )
                if self._cancel.wait(delay):
                    raise PermanentProviderError(e.message) from e

    @staticmethod
    def _resolve(attributes: dict, store: StateStore) -> dict:
        """Substitute references using committed state.

        Provider attributes win over declared ones, so ${Network.main.id}
        resolves to the provider-assigned id.
        """
        def lookup(ref: Reference) -> Any:
            entry = store.get(ref.address)
            if entry is None or entry.resource_id is None:
                raise PermanentProviderError(f"Cannot resolve {ref}: {ref.address} is not applied")
            if ref.attribute in entry.provider_attributes:
                return entry.provider_attributes[ref.attribute]
            if ref.attribute in entry.attributes:
                return resolve_references(entry.attributes[ref.attribute], lookup)
            raise PermanentProviderError(
                f"Cannot resolve {ref}: {ref.address} has no attribute '{ref.attribute}'"
            )

        return resolve_references(attributes, lookup)

    # -- refresh --------------------------------------------------------

    def _refresh_entry(self, entry: StateEntry, store: StateStore) -> tuple[str, str]:
        if entry.resource_id is None:
            return UNCHANGED, 'not created'
        try:
            adapter = self.registry.get(entry.kind)
            current = self._call(lambda: adapter.read(entry.resource_id), f'read:{entry.address}', _Outcome())
        except ResourceNotFoundError as e:
            store.mark(entry.address, TAINTED, str(e))
            logger.warning(f"[refresh] {entry.address} not found at provider, marked tainted")
            return APPLIED, 'marked tainted'
        except (ProviderError, KeyError) as e:
            logger.error(f"[refresh] {entry.address}: {e}")
            return FAILED, str(e)
        except Exception as e:
            logger.exception(f"[refresh] {entry.address} raised an unexpected error")
            return FAILED, f"{type(e).__name__}: {e}"

        merged = {**entry.provider_attributes, **(current or {})}
        if merged == entry.provider_attributes:
            return UNCHANGED, ''
        entry.provider_attributes = merged
        store.commit(entry)
        return APPLIED, 'refreshed'

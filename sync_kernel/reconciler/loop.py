"""
Sync Controller: the heartbeat of the kernel.

Keeps every managed source converging toward its latest desired revision.
Poll timers, webhooks and manual requests all enter through sync().

Per source:
  Idle → Syncing → (InSync | OutOfSync | Error) → Idle

Single-flight: while a source is syncing, another trigger for the same
revision is coalesced into a no-op. A trigger carrying a different revision
cancels the in-flight pass (operations already started finish) and schedules
exactly one follow-up pass for that revision.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from sync_kernel.errors import FetchError, SyncWindowClosedError, UnknownSourceError
from sync_kernel.history.store import SyncHistoryStore
from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.reconciler import ReconcilerConfig, SourcePhase, SourceStatus, SyncOutcome
from sync_kernel.models.source import DesiredStateSource
from sync_kernel.models.sync import ComparisonResult, SyncResult, SyncState, SyncTrigger
from sync_kernel.reconciler.engine import Reconciler
from sync_kernel.reconciler.windows import sync_allowed
from sync_kernel.source.provider import HEAD, DesiredStateProvider, fetch_source, resolve_revision
from sync_kernel.target.environment import TargetEnvironment

logger = logging.getLogger(__name__)


class ManagedSource:
    """A desired-state provider bound to a sync policy and destination."""

    def __init__(
        self,
        name: str,
        provider: DesiredStateProvider,
        policy: Optional[SyncPolicy] = None,
        target_revision: str = HEAD,
        path: str = "",
        project: Optional[str] = None,
    ):
        self.name = name
        self.provider = provider
        self.policy = policy or SyncPolicy()
        self.target_revision = target_revision
        self.path = path
        self.project = project

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "repo_url": self.provider.location,
            "path": self.path,
            "project": self.project,
            "target_revision": self.target_revision,
            "policy": self.policy.model_dump(mode="json"),
        }


class _Flight:
    """Bookkeeping for the sync currently running on one source."""

    def __init__(self, revision: Optional[str]):
        self.revision = revision
        self.cancel = threading.Event()
        self.pending: Optional[Tuple[str, SyncTrigger]] = None


def _same_location(a: str, b: str) -> bool:
    def norm(url: str) -> str:
        url = url.rstrip("/")
        return url[:-4] if url.endswith(".git") else url
    return norm(a) == norm(b)


class SyncController:
    """Drives reconciliation for every registered source."""

    def __init__(
        self,
        environments: Union[TargetEnvironment, Mapping[str, TargetEnvironment]],
        history_store: Optional[SyncHistoryStore] = None,
        config: Optional[ReconcilerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ReconcilerConfig()
        if isinstance(environments, Mapping):
            self.environments: Dict[str, TargetEnvironment] = dict(environments)
        else:
            self.environments = {environments.server: environments}
        self.history = history_store or SyncHistoryStore(
            self.config.history_db_path, history_limit=self.config.history_limit
        )
        self.reconciler = Reconciler(self.config)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._sources: Dict[str, ManagedSource] = {}
        self._status: Dict[str, SourceStatus] = {}
        self._flights: Dict[str, _Flight] = {}
        self._next_poll: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._running = False

    @property
    def status(self) -> str:
        """Current controller loop status."""
        return "running" if self._running else "stopped"

    def update_config(self, config: ReconcilerConfig) -> None:
        """Apply new settings to subsequent passes. The history database is not reopened."""
        with self._lock:
            self.config = config
            self.reconciler.config = config
            self.history.history_limit = config.history_limit

    # --- Source registry ---

    def register_source(self, source: ManagedSource) -> SourceStatus:
        """Register (or replace) a managed source. It is due for polling immediately."""
        if source.policy.server not in self.environments:
            raise ValueError(f"No target environment for server {source.policy.server!r}")
        with self._lock:
            self._sources[source.name] = source
            status = self._status.setdefault(source.name, SourceStatus(name=source.name))
            self._next_poll[source.name] = self._clock()
            return status.model_copy()

    def unregister_source(self, name: str) -> bool:
        """Stop managing a source. An in-flight pass is cancelled."""
        with self._lock:
            flight = self._flights.get(name)
            if flight is not None:
                flight.pending = None
                flight.cancel.set()
            self._status.pop(name, None)
            self._next_poll.pop(name, None)
            return self._sources.pop(name, None) is not None

    def get_source(self, name: str) -> ManagedSource:
        with self._lock:
            source = self._sources.get(name)
        if source is None:
            raise UnknownSourceError(f"Unknown source: {name}")
        return source

    def list_sources(self) -> List[ManagedSource]:
        with self._lock:
            return list(self._sources.values())

    def get_status(self, name: str) -> SourceStatus:
        with self._lock:
            status = self._status.get(name)
        if status is None:
            raise UnknownSourceError(f"Unknown source: {name}")
        return status.model_copy()

    # --- Refresh & sync ---

    def _environment_for(self, source: ManagedSource) -> TargetEnvironment:
        return self.environments[source.policy.server]

    def _fetch(self, source: ManagedSource, revision: Optional[str]) -> DesiredStateSource:
        return fetch_source(
            source.provider,
            source.name,
            source.policy,
            revision=revision or source.target_revision,
            path=source.path,
        )

    def refresh(self, name: str) -> ComparisonResult:
        """Compare the latest desired revision against live state without syncing."""
        source = self.get_source(name)
        try:
            snapshot = self._fetch(source, None)
        except FetchError as e:
            self._record_fetch_error(name, e)
            raise
        comparison = self.reconciler.compare(snapshot, self._environment_for(source), source.policy)
        with self._lock:
            status = self._status.get(name)
            if status is not None and status.phase == SourcePhase.IDLE:
                status.sync_state = comparison.sync_state
                status.revision = comparison.revision
                status.last_compared_at = comparison.compared_at
                status.last_error = None
        return comparison

    def sync(
        self,
        name: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        revision: Optional[str] = None,
    ) -> Optional[SyncResult]:
        """
        Run a sync pass for one source.
        Returns None when the trigger was coalesced, superseded an in-flight
        pass, or was held back by a sync window or the cool-down.
        """
        return self.dispatch(name, trigger, revision)[1]

    def dispatch(
        self,
        name: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        revision: Optional[str] = None,
    ) -> Tuple[SyncOutcome, Optional[SyncResult]]:
        """Like sync(), but also reports what happened to the trigger."""
        source = self.get_source(name)
        manual = trigger == SyncTrigger.MANUAL
        now = self._clock()

        if not sync_allowed(source.policy.sync_windows, now, manual):
            if manual:
                raise SyncWindowClosedError(f"Sync windows block manual sync of {name}")
            logger.info("Sync of %s skipped: outside sync windows", name)
            return SyncOutcome.WINDOW_CLOSED, None

        with self._lock:
            status = self._status[name]
            flight = self._flights.get(name)
            if flight is not None:
                if revision is not None and flight.revision is not None and revision != flight.revision:
                    flight.pending = (revision, trigger)
                    flight.cancel.set()
                    logger.info(
                        "Sync of %s@%s superseded by %s", name, flight.revision, revision
                    )
                    return SyncOutcome.SUPERSEDED, None
                logger.debug("Sync of %s already in progress; %s trigger coalesced", name, trigger.value)
                return SyncOutcome.COALESCED, None
            if not manual and self._cooling_down(status, revision, now):
                logger.debug("Sync of %s held back by cool-down", name)
                return SyncOutcome.COOLING_DOWN, None

            flight = _Flight(revision)
            self._flights[name] = flight
            prior_state = status.sync_state
            status.phase = SourcePhase.SYNCING
            status.sync_state = SyncState.SYNCING
            status.syncing_revision = revision

        try:
            return SyncOutcome.COMPLETED, self._run_flight(source, status, flight, trigger, revision, prior_state)
        finally:
            with self._lock:
                self._flights.pop(name, None)
                status.phase = SourcePhase.IDLE
                status.syncing_revision = None
                status.cooldown_until = self._clock() + timedelta(seconds=self.config.cooldown_seconds)

    def _cooling_down(self, status: SourceStatus, revision: Optional[str], now: datetime) -> bool:
        """Automated re-syncs of the same revision wait for the cool-down; new revisions don't."""
        if status.cooldown_until is None or now >= status.cooldown_until:
            return False
        return revision is None or revision == status.revision

    def _run_flight(
        self,
        source: ManagedSource,
        status: SourceStatus,
        flight: _Flight,
        trigger: SyncTrigger,
        revision: Optional[str],
        prior_state: Optional[SyncState],
    ) -> SyncResult:
        environment = self._environment_for(source)
        result: Optional[SyncResult] = None

        while True:
            try:
                snapshot = self._fetch(source, revision)
            except FetchError as e:
                logger.warning("Fetch for %s failed: %s", source.name, e)
                with self._lock:
                    status.sync_state = prior_state
                    status.last_error = str(e)
                    status.consecutive_failures += 1
                if result is None:
                    raise
                return result

            with self._lock:
                flight.revision = snapshot.revision
                status.syncing_revision = snapshot.revision

            result = self.reconciler.reconcile(
                snapshot, environment, source.policy, trigger=trigger, cancel=flight.cancel
            )

            with self._lock:
                pending = flight.pending
                flight.pending = None
                if pending is not None and result.cancelled:
                    result.superseded_by = pending[0]
                self._record_result(status, result)
                if pending is not None:
                    revision, trigger = pending
                    flight.revision = revision
                    flight.cancel = threading.Event()
                    prior_state = status.sync_state
                    status.sync_state = SyncState.SYNCING

            self.history.append(result)
            if pending is None:
                return result
            logger.info("Following up %s with revision %s", source.name, revision)

    def _record_result(self, status: SourceStatus, result: SyncResult) -> None:
        status.sync_state = result.sync_state
        status.revision = result.revision
        status.last_synced_at = result.finished_at
        status.last_result_id = result.id
        status.last_error = result.errors[0].message if result.errors else None
        if result.sync_state == SyncState.ERROR:
            status.consecutive_failures += 1
        else:
            status.consecutive_failures = 0

    def _record_fetch_error(self, name: str, error: FetchError) -> None:
        with self._lock:
            status = self._status.get(name)
            if status is not None:
                status.last_error = str(error)
                status.consecutive_failures += 1

    # --- Triggers ---

    def notify(self, repo_url: str, revision: Optional[str] = None) -> List[str]:
        """
        Webhook signal: the repository at ``repo_url`` has a new revision.
        Returns the names of the sources it applies to.
        """
        matched = [s for s in self.list_sources() if _same_location(s.provider.location, repo_url)]
        for source in matched:
            target = revision if source.target_revision == HEAD else source.target_revision
            try:
                if source.policy.automated:
                    self.sync(source.name, SyncTrigger.WEBHOOK, revision=target)
                else:
                    self.refresh(source.name)
            except FetchError as e:
                logger.warning("Webhook for %s: fetch failed: %s", source.name, e)
        return [s.name for s in matched]

    def due_sources(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self._clock()
        with self._lock:
            return [name for name, due in self._next_poll.items() if due <= now]

    def poll_source(self, name: str) -> Optional[SyncResult]:
        """Poll one source: sync it when automated, otherwise refresh its status."""
        source = self.get_source(name)
        with self._lock:
            self._next_poll[name] = self._clock() + timedelta(
                seconds=source.policy.poll_interval_seconds
            )
        try:
            if not source.policy.automated:
                self.refresh(name)
                return None
            try:
                revision = resolve_revision(source.provider, source.target_revision)
            except FetchError as e:
                self._record_fetch_error(name, e)
                raise
            return self.sync(name, SyncTrigger.POLL, revision=revision)
        except FetchError as e:
            logger.warning("Poll of %s failed: %s", name, e)
            return None

    def poll_once(self, now: Optional[datetime] = None) -> List[SyncResult]:
        """Poll every due source sequentially."""
        results = []
        for name in self.due_sources(now):
            result = self.poll_source(name)
            if result is not None:
                results.append(result)
        return results

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the poll loop until ``stop_event`` is set. Sources are polled in worker threads."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                due = self.due_sources()
                if due:
                    outcomes = await asyncio.gather(
                        *(asyncio.to_thread(self.poll_source, name) for name in due),
                        return_exceptions=True,
                    )
                    for name, outcome in zip(due, outcomes):
                        if isinstance(outcome, Exception):
                            logger.error("Poll of %s raised %s: %s", name, type(outcome).__name__, outcome)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.heartbeat_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False

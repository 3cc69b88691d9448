"""
AnalyticsRegistry: the host side of the analytics pipeline.

Keeps one JobPoller per participant on the roster, drives all of them from a
single repeating timer and exposes the resulting per-participant view state.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from meeting_pipeline.analytics_client import AnalyticsClient
from meeting_pipeline.constant import POLL_INTERVAL_MS
from meeting_pipeline.models import AnalyticsMetrics, PollOutcome, ViewState
from meeting_pipeline.poller import JobPoller
from meeting_pipeline.scheduler import RepeatingTimer, TimerFactory

logger = logging.getLogger(__name__)

ViewListener = Callable[[str, Optional[ViewState]], None]


@dataclass
class _SubjectEntry:
    poller: JobPoller
    view: ViewState = field(default_factory=ViewState)
    task: Optional[asyncio.Task] = None


class AnalyticsRegistry:
    def __init__(
        self,
        client: AnalyticsClient,
        session_id: str,
        host_id: str,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        timer_factory: TimerFactory = RepeatingTimer,
    ) -> None:
        self.client = client
        self.session_id = session_id
        self.host_id = host_id
        self.poll_interval_ms = poll_interval_ms
        self._timer_factory = timer_factory
        self._timer: Optional[RepeatingTimer] = None
        self._entries: Dict[str, _SubjectEntry] = {}
        self._lock = threading.Lock()
        self._listeners: List[ViewListener] = []

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def set_roster(self, subjects: Iterable[str]) -> None:
        """Replace the roster. The host is never polled."""
        wanted: Set[str] = {s for s in subjects if s and s != self.host_id}
        added: List[str] = []
        removed: List[_SubjectEntry] = []
        with self._lock:
            for subject_id in list(self._entries):
                if subject_id not in wanted:
                    removed.append(self._entries.pop(subject_id))
            for subject_id in wanted:
                if subject_id not in self._entries:
                    self._entries[subject_id] = _SubjectEntry(
                        poller=JobPoller(self.client, self.session_id, subject_id)
                    )
                    added.append(subject_id)

        for entry in removed:
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
            logger.info("%s left, stopped polling", entry.poller.subject_id)
            self._notify(entry.poller.subject_id, None)
        for subject_id in added:
            logger.info("%s joined, polling %s", subject_id, self.session_id)
            self._notify(subject_id, ViewState())

    @property
    def roster(self) -> Set[str]:
        with self._lock:
            return set(self._entries)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_view(self, subject_id: str) -> Optional[ViewState]:
        with self._lock:
            entry = self._entries.get(subject_id)
            return entry.view if entry is not None else None

    def views(self) -> Dict[str, ViewState]:
        with self._lock:
            return {subject_id: entry.view for subject_id, entry in self._entries.items()}

    def metrics(self) -> AnalyticsMetrics:
        return AnalyticsMetrics.from_results(
            view.result for view in self.views().values() if view.result is not None
        )

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Call ``listener(subject_id, view)`` on every change.

        ``view`` is None when the subject left the roster. Returns a callable
        that removes the subscription.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _notify(self, subject_id: str, view: Optional[ViewState]) -> None:
        for listener in list(self._listeners):
            try:
                listener(subject_id, view)
            except Exception:
                logger.exception("view listener failed for %s", subject_id)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._timer is not None:
            return
        self._timer = self._timer_factory(self.poll_interval_ms, self.poll_once, "analytics-poll")
        self._timer.start()
        await self.poll_once()

    async def poll_once(self) -> None:
        """Start a poll for every idle subject and wait for those polls."""
        started: List[asyncio.Task] = []
        with self._lock:
            for subject_id, entry in self._entries.items():
                if entry.poller.busy or (entry.task is not None and not entry.task.done()):
                    continue
                entry.task = asyncio.create_task(
                    self._poll_subject(subject_id, entry), name=f"poll-{subject_id}"
                )
                started.append(entry.task)
        if started:
            await asyncio.gather(*started, return_exceptions=True)

    async def _poll_subject(self, subject_id: str, entry: _SubjectEntry) -> None:
        outcome = await entry.poller.poll()
        if outcome is None:
            return
        self._apply(subject_id, entry, outcome)

    def _apply(self, subject_id: str, entry: _SubjectEntry, outcome: PollOutcome) -> None:
        with self._lock:
            # the subject may have left (or left and rejoined) while the request was out
            if self._entries.get(subject_id) is not entry:
                logger.debug("dropping late %s response for %s", outcome.status.value, subject_id)
                return
            entry.poller.job.apply(outcome)
            view = entry.poller.job.view(outcome)
            changed = view != entry.view
            entry.view = view
        if changed:
            self._notify(subject_id, view)

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        tasks = [e.task for e in entries if e.task is not None and not e.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if timer is not None:
            await timer.join()

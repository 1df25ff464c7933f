"""
Search progress reporting.

A ``SearchProgressTracker`` owns the five-step array of one search and
enforces forward-only transitions. The ``ProgressBroadcaster`` keys snapshots
by the originating turn, keeps the final array of each finished search as a
durable record, and fans updates out to listeners and async watchers.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from aroundyou.errors import ProgressTransitionError
from aroundyou.models import STEP_ORDER, SearchProgress, SearchStep, StepId, StepStatus

logger = logging.getLogger(__name__)

STEP_LABELS: Dict[StepId, str] = {
    StepId.UNDERSTAND_INTENT: "Thinking...",
    StepId.FIND_SHOPS: "Finding nearby shops",
    StepId.SEMANTIC_SEARCH: "Searching for items",
    StepId.EXPANDING_SEARCH: "Expanding search...",
    StepId.RANKING: "Ranking results",
}

_NEXT_STATUSES: Dict[StepStatus, Set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.ACTIVE, StepStatus.ERROR},
    StepStatus.ACTIVE: {StepStatus.COMPLETED, StepStatus.ERROR},
    StepStatus.COMPLETED: set(),
    StepStatus.ERROR: set(),
}

ProgressListener = Callable[[str, SearchProgress, bool], None]


def initial_progress() -> SearchProgress:
    """Five pending steps with their default labels."""
    return SearchProgress(
        steps=[SearchStep(id=step_id, label=STEP_LABELS[step_id]) for step_id in STEP_ORDER]
    )


class SearchProgressTracker:
    """
    Step state for a single search.

    Every change is pushed to ``on_update`` as ``(turn_id, progress)``.
    """

    def __init__(
        self,
        turn_id: str,
        on_update: Optional[Callable[[str, SearchProgress], None]] = None
    ):
        self.turn_id = turn_id
        self._progress = initial_progress()
        self._on_update = on_update

    @property
    def failed(self) -> bool:
        return any(step.status == StepStatus.ERROR for step in self._progress.steps)

    @property
    def active_step(self) -> Optional[StepId]:
        for step in self._progress.steps:
            if step.status == StepStatus.ACTIVE:
                return step.id
        return None

    def snapshot(self) -> SearchProgress:
        return self._progress.model_copy(deep=True)

    def start(self, step_id: StepId, details: Optional[Dict] = None) -> None:
        self._transition(step_id, StepStatus.ACTIVE, details)

    def complete(self, step_id: StepId, details: Optional[Dict] = None) -> None:
        self._transition(step_id, StepStatus.COMPLETED, details)

    def fail(self, step_id: StepId, message: str, details: Optional[Dict] = None) -> None:
        self._transition(step_id, StepStatus.ERROR, {**(details or {}), "error": message})

    def set_label(self, step_id: StepId, label: str) -> None:
        self._progress.step(step_id).label = label
        self._emit()

    def set_intent(self, primary_query: str, expanded_queries: List[str]) -> None:
        self._progress.primary_query = primary_query
        self._progress.expanded_queries = list(expanded_queries)
        self._emit()

    def _transition(self, step_id: StepId, status: StepStatus, details: Optional[Dict]) -> None:
        step_id = StepId(step_id)
        step = self._progress.step(step_id)

        if status not in _NEXT_STATUSES[step.status]:
            raise ProgressTransitionError(
                f"{step_id.value} cannot move from {step.status.value} to {status.value}"
            )

        if step.status == StepStatus.PENDING:
            # Leaving pending requires every earlier step to be done
            index = STEP_ORDER.index(step_id)
            earlier = self._progress.steps[:index]
            if any(s.status != StepStatus.COMPLETED for s in earlier):
                raise ProgressTransitionError(
                    f"{step_id.value} cannot start before earlier steps complete"
                )

        step.status = status
        if details:
            step.details = {**(step.details or {}), **details}
        self._progress.current_step_id = step_id
        self._emit()

    def _emit(self) -> None:
        if self._on_update is not None:
            self._on_update(self.turn_id, self.snapshot())


class ProgressBroadcaster:
    """
    Per-turn progress registry.

    Args:
        history_limit: Number of finished searches whose final snapshot is
            retained (oldest evicted first)
    """

    def __init__(self, history_limit: int = 50):
        self.history_limit = history_limit
        self._live: Dict[str, SearchProgress] = {}
        self._final: "OrderedDict[str, SearchProgress]" = OrderedDict()
        self._current_turn: Optional[str] = None
        self._listeners: List[ProgressListener] = []
        self._watchers: Dict[str, List[asyncio.Queue]] = {}

    @property
    def current_turn_id(self) -> Optional[str]:
        return self._current_turn

    def tracker(self, turn_id: str) -> SearchProgressTracker:
        """Create the tracker for a new search and publish its pending state."""
        tracker = SearchProgressTracker(turn_id, on_update=self._publish)
        self._publish(turn_id, tracker.snapshot())
        return tracker

    def finalize(self, turn_id: str, progress: Optional[SearchProgress] = None) -> None:
        """Freeze the turn's snapshot as its durable record."""
        if turn_id in self._final:
            return
        snapshot = progress if progress is not None else self._live.get(turn_id)
        if snapshot is None:
            logger.warning("Finalize requested for unknown search turn %s", turn_id)
            return

        self._live.pop(turn_id, None)
        self._final[turn_id] = snapshot.model_copy(deep=True)
        while len(self._final) > self.history_limit:
            evicted, _ = self._final.popitem(last=False)
            logger.debug("Evicted progress record for turn %s", evicted)

        self._notify(turn_id, self._final[turn_id], final=True)

    def is_final(self, turn_id: str) -> bool:
        return turn_id in self._final

    def snapshot_for(self, turn_id: str) -> Optional[SearchProgress]:
        """Live or final snapshot for ``turn_id`` (a copy)."""
        progress = self._final.get(turn_id)
        if progress is None:
            progress = self._live.get(turn_id)
        return progress.model_copy(deep=True) if progress is not None else None

    def current(self) -> Optional[SearchProgress]:
        """Snapshot of the most recently updated search."""
        if self._current_turn is None:
            return None
        return self.snapshot_for(self._current_turn)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """
        Register ``listener(turn_id, progress, final)``.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def watch(self, turn_id: str) -> AsyncIterator[SearchProgress]:
        """Yield every snapshot of ``turn_id`` until it is finalized."""
        existing = self.snapshot_for(turn_id)
        if self.is_final(turn_id):
            if existing is not None:
                yield existing
            return

        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.setdefault(turn_id, []).append(queue)
        try:
            if existing is not None:
                yield existing
            while True:
                snapshot, final = await queue.get()
                yield snapshot
                if final:
                    return
        finally:
            queues = self._watchers.get(turn_id)
            if queues and queue in queues:
                queues.remove(queue)
                if not queues:
                    del self._watchers[turn_id]

    def clear(self) -> None:
        self._live.clear()
        self._final.clear()
        self._current_turn = None

    def _publish(self, turn_id: str, progress: SearchProgress) -> None:
        if turn_id in self._final:
            logger.debug("Ignoring update for finalized search turn %s", turn_id)
            return
        self._live[turn_id] = progress.model_copy(deep=True)
        self._current_turn = turn_id
        self._notify(turn_id, self._live[turn_id], final=False)

    def _notify(self, turn_id: str, progress: SearchProgress, final: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(turn_id, progress.model_copy(deep=True), final)
            except Exception:
                logger.exception("Progress listener failed for turn %s", turn_id)

        for queue in self._watchers.get(turn_id, []):
            queue.put_nowait((progress.model_copy(deep=True), final))


def statuses(progress: Optional[SearchProgress]) -> List[str]:
    """Step statuses as plain strings, e.g. for logs and payloads."""
    if progress is None:
        return []
    return [status.value for status in progress.statuses()]


def step_payload(progress: SearchProgress) -> List[Dict]:
    return [step.model_dump(mode="json") for step in progress.steps]


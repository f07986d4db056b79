"""Live view of a school's pickup queue.

A viewer (teacher screen, kiosk display, parent app backend) receives full
snapshots of the active queue. Pushes from the broadcaster are preferred;
when the broadcaster cannot subscribe the viewer falls back to polling.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from .broadcast import Broadcaster, school_room
from .config import Config
from .queue_manager import QueueManager
from .schemas import QueueEvent, QueueSnapshot

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[QueueSnapshot], None]


class QueueViewer:
    """Keeps one viewer converged on the latest committed queue snapshot.

    Snapshots are delivered in version order; older or repeated versions
    are dropped, so the handler never sees the queue go backwards.
    """

    def __init__(
        self,
        manager: QueueManager,
        broadcaster: Broadcaster,
        school_id: str,
        on_snapshot: SnapshotHandler,
        poll_interval: float | None = None,
    ):
        self.manager: QueueManager = manager
        self.broadcaster: Broadcaster = broadcaster
        self.school_id: str = school_id
        self.on_snapshot: SnapshotHandler = on_snapshot
        self.poll_interval: float = float(poll_interval or Config.QUEUE_POLL_INTERVAL)

        self.mode: str | None = None
        self._latest: QueueSnapshot | None = None
        self._lock: threading.Lock = threading.Lock()
        self._stop: threading.Event = threading.Event()
        self._poller: threading.Thread | None = None

    @property
    def latest(self) -> QueueSnapshot | None:
        return self._latest

    def start(self) -> str:
        """Deliver the current queue and start following changes.

        Returns:
            "push" when subscribed to the school room, "poll" otherwise
        """
        self._stop.clear()

        # Subscribe before the initial fetch so no commit falls between them
        if self.broadcaster.subscribe(school_room(self.school_id), self._on_event):
            self.mode = "push"
            _ = self.refresh()
        else:
            logger.warning(
                f"Push unavailable for school {self.school_id}, polling every {self.poll_interval}s"
            )
            self.mode = "poll"
            _ = self.refresh()
            self._poller = threading.Thread(
                target=self._poll_loop, name=f"queue-viewer-{self.school_id}", daemon=True
            )
            self._poller.start()
        return self.mode

    def stop(self) -> None:
        self._stop.set()
        if self.mode == "push":
            self.broadcaster.unsubscribe(school_room(self.school_id), self._on_event)
        if self._poller is not None:
            self._poller.join(timeout=self.poll_interval + 1)
            self._poller = None
        self.mode = None

    def refresh(self) -> bool:
        """Fetch and deliver the current snapshot; returns True if it was new."""
        return self._deliver(self.manager.get_school_queue(self.school_id))

    def _on_event(self, payload: dict[str, Any]) -> None:
        try:
            event = QueueEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed queue event for {self.school_id}: {e}")
            return
        if event.school_id != self.school_id:
            return
        _ = self._deliver(event.snapshot)

    def _deliver(self, snapshot: QueueSnapshot) -> bool:
        with self._lock:
            if self._latest is not None and snapshot.version <= self._latest.version:
                return False
            self._latest = snapshot
            self.on_snapshot(snapshot)
            return True

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                _ = self.refresh()
            except Exception as e:
                logger.warning(f"Queue poll for {self.school_id} failed: {e}")

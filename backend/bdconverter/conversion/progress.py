"""Progress channel: per-request fan-out of progress events to a live listener.

Events are ephemeral. Nothing is buffered for listeners that connect late, and
events for a request without a listener are dropped.
"""
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from bdconverter.conversion.models import TaskStage

logger = logging.getLogger("bdconverter.progress")

Listener = Callable[[dict], None]


@dataclass
class LogEvent:
    message: str

    def to_payload(self) -> dict:
        return {"type": "log", "message": self.message}


@dataclass
class ThumbnailEvent:
    color: str
    gray: Optional[str] = None
    phase: str = "start"  # "start" | "final"

    def to_payload(self) -> dict:
        payload = {"type": "thumbnail-init", "color": self.color, "phase": self.phase}
        if self.gray:
            payload["gray"] = self.gray
        return payload


@dataclass
class ProgressEvent:
    current_file_index: int
    total_files: int
    current_pct: Optional[int] = None
    total_pct: Optional[int] = None
    current_pages: Optional[int] = None
    total_pages: Optional[int] = None
    status: Optional[str] = None
    current_file_name: Optional[str] = None
    stage: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "type": "progress",
            "currentFileIndex": self.current_file_index,
            "totalFiles": self.total_files,
        }
        optional = {
            "currentPct": self.current_pct,
            "totalPct": self.total_pct,
            "currentPages": self.current_pages,
            "totalPages": self.total_pages,
            "status": self.status,
            "currentFileName": self.current_file_name,
            "stage": self.stage,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


class ProgressChannel:
    """Registry of request id -> listener, owned by the service."""

    def __init__(self):
        self._listeners: dict[str, Listener] = {}
        self._lock = threading.Lock()

    def open(self, request_id: str, listener: Listener) -> None:
        """Register a listener; replaces any earlier listener for the same id."""
        with self._lock:
            self._listeners[request_id] = listener
        logger.debug("Progress listener registered for %s", request_id)

    def close(self, request_id: str, listener: Optional[Listener] = None) -> None:
        """Remove the listener. With `listener`, only if it is still the registered one."""
        with self._lock:
            current = self._listeners.get(request_id)
            if current is None:
                return
            if listener is not None and current is not listener:
                return
            del self._listeners[request_id]
        logger.debug("Progress listener removed for %s", request_id)

    def has_listener(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._listeners

    def publish(self, request_id: Optional[str], event) -> None:
        if not request_id:
            return
        payload = event.to_payload() if hasattr(event, "to_payload") else dict(event)
        with self._lock:
            listener = self._listeners.get(request_id)
        if listener is None:
            logger.debug("No listener for %s, event dropped: %s", request_id, payload.get("type"))
            return
        try:
            listener(payload)
        except Exception as e:
            # A broken listener only loses its own events; conversion goes on.
            logger.warning("Progress listener for %s failed, removing it: %s", request_id, e)
            self.close(request_id, listener)


PAGE_FILE_PATTERN = re.compile(r"^page[-_]?\d+.*\.(jpe?g|png|tiff?|bmp|gif|webp|jp2|ppm|pbm|pgm|pnm)$", re.IGNORECASE)


class DirectoryProgressPoller:
    """Estimates progress of a running tool by counting page files it has written so far.

    Samples `directory` every `interval` seconds on a background thread and calls
    `on_sample(current, total)`. The count is an estimate: listings can be partial
    and files can still be half-written. Use as a context manager around the step.
    """

    def __init__(
        self,
        directory: Path,
        total: int,
        on_sample: Callable[[int, int], None],
        interval: float = 1.0,
        pattern: re.Pattern = PAGE_FILE_PATTERN,
    ):
        self.directory = directory
        self.total = total
        self.on_sample = on_sample
        self.interval = interval
        self.pattern = pattern
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.samples = 0

    def count(self) -> int:
        try:
            return sum(1 for p in self.directory.iterdir() if self.pattern.match(p.name))
        except OSError:
            # directory not created yet or entries vanishing mid-listing
            return 0

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            current = min(self.count(), self.total)
            self.samples += 1
            try:
                self.on_sample(current, self.total)
            except Exception:
                logger.exception("Progress sample callback failed")

    def start(self) -> "DirectoryProgressPoller":
        self._thread = threading.Thread(target=self._loop, name="progress-poller", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> "DirectoryProgressPoller":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()


class TaskProgress:
    """Reports one task's progress to the channel: stage changes, page counts, logs."""

    def __init__(
        self,
        channel: Optional[ProgressChannel],
        request_id: Optional[str],
        index: int = 1,
        total_tasks: int = 1,
        name: str = "",
    ):
        self.channel = channel
        self.request_id = request_id
        self.index = index
        self.total_tasks = total_tasks
        self.name = name
        self.stage_value = TaskStage.RECEIVED

    def _publish(self, event) -> None:
        if self.channel is not None:
            self.channel.publish(self.request_id, event)

    def _event(self, **kwargs) -> ProgressEvent:
        return ProgressEvent(
            current_file_index=self.index,
            total_files=self.total_tasks,
            stage=self.stage_value.value,
            **kwargs,
        )

    @property
    def batch_pct(self) -> int:
        done = self.index if self.stage_value is TaskStage.DONE else self.index - 1
        return round(done / self.total_tasks * 100) if self.total_tasks else 100

    def log(self, message: str) -> None:
        self._publish(LogEvent(message))

    def stage(
        self,
        stage: TaskStage,
        status: str,
        current_pct: Optional[int] = None,
        current_pages: Optional[int] = None,
        total_pages: Optional[int] = None,
    ) -> None:
        logger.debug("Task %s/%s %s -> %s", self.index, self.total_tasks, self.name, stage.value)
        self.stage_value = stage
        self._publish(self._event(
            total_pct=self.batch_pct,
            current_pct=current_pct,
            current_pages=current_pages,
            total_pages=total_pages,
            status=status,
            current_file_name=self.name,
        ))

    def sample(self, current: int, total: int) -> None:
        """Page-count estimate from a directory poll while an external step runs."""
        pct = min(100, round(current / total * 100)) if total else 0
        self._publish(self._event(current_pct=pct, current_pages=current, total_pages=total))

    def page(self, current: int, total: int) -> None:
        pct = min(100, round(current / total * 100)) if total else 100
        self._publish(self._event(
            current_pct=pct,
            current_pages=current,
            total_pages=total,
            status=f"Processing image {current}/{total}",
        ))

    def thumbnail(self, event: Optional[ThumbnailEvent]) -> None:
        if event is not None:
            self._publish(event)

"""
Progress — single-owner progress rendering fed by a queue.

Workers never touch the bar.  They ``post()`` a ``ProgressEvent`` and
carry on; one render thread drains the queue and drives ``tqdm``.  The
render thread exits on the sentinel posted by ``close()``, which every
run reaches through a ``finally`` block, so it cannot wait forever on a
queue nobody writes to.

If rendering raises (closed terminal, broken pipe) the coordinator goes
silent for the rest of the run; the build result is unaffected.
"""
import hashlib
import logging
import queue
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, unique
from pathlib import Path
from typing import Dict, List, Optional

from tqdm import tqdm

logger = logging.getLogger(__name__)


@unique
class EventKind(str, Enum):
    TOTAL = "TOTAL"              # message carries the new total
    INTEGRATING = "INTEGRATING"  # unit started
    LINKING = "LINKING"          # target started
    SKIPPED = "SKIPPED"          # unit excluded
    CACHED = "CACHED"            # unit up to date
    FINISHED = "FINISHED"
    FAILED = "FAILED"


_STATUS = {
    EventKind.INTEGRATING: "Integrating",
    EventKind.LINKING: "Linking",
    EventKind.SKIPPED: "Skipped",
    EventKind.FAILED: "Failed",
}

# events that complete one step of the bar
_TERMINAL = (EventKind.SKIPPED, EventKind.CACHED, EventKind.FINISHED, EventKind.FAILED)


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    name: str
    message: str = ""


_SENTINEL = object()


def status_line(status: str, name: str) -> str:
    return f"{status:>12} {name}"


class ProgressCoordinator:
    """Owns the progress bar; everything else talks to it through ``post()``."""

    def __init__(self, total: int = 0, verbosity: int = 0, disable: bool = False):
        self.verbosity = verbosity
        self._queue: "queue.Queue" = queue.Queue()
        self._silent = disable
        self._closed = False
        self._close_lock = threading.Lock()
        self._active: List[str] = []
        self.counts: Counter = Counter()
        self.failures: Dict[str, str] = {}
        self._bar: Optional[tqdm] = None
        if not self._silent:
            self._bar = tqdm(
                total=total,
                desc="Building",
                dynamic_ncols=True,
                disable=verbosity > 0,
                leave=False,
            )
        self._thread = threading.Thread(target=self._render_loop, name="build-ci-progress", daemon=True)
        self._thread.start()

    # ── producer side ────────────────────────────────────────────────

    def post(self, kind: EventKind, name: str, message: str = "") -> None:
        self._queue.put(ProgressEvent(kind, name, message))

    def set_total(self, total: int) -> None:
        self.post(EventKind.TOTAL, "", str(total))

    def close(self) -> None:
        """Drain the queue and stop the render thread.  Safe to call twice."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(_SENTINEL)
        self._thread.join()
        if self._bar is not None:
            try:
                self._bar.close()
            except (OSError, ValueError) as e:
                logger.debug("progress bar close failed: %s", e)

    def __enter__(self) -> "ProgressCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ── render thread ────────────────────────────────────────────────

    def _render_loop(self) -> None:
        while True:
            event = self._queue.get()
            if event is _SENTINEL:
                return
            self._account(event)
            if self._silent:
                continue
            try:
                self._render(event)
            except Exception as e:
                logger.debug("progress rendering disabled: %s", e)
                self._silent = True

    def _account(self, event: ProgressEvent) -> None:
        if event.kind == EventKind.TOTAL:
            return
        self.counts[event.kind] += 1
        if event.kind == EventKind.FAILED:
            self.failures[event.name] = event.message

    def _render(self, event: ProgressEvent) -> None:
        bar = self._bar
        if bar is None:
            return
        if event.kind == EventKind.TOTAL:
            bar.total = int(event.message)
            bar.refresh()
            return

        status = _STATUS.get(event.kind)
        if status is not None:
            self._emit(status_line(status, event.name))
        if event.kind == EventKind.FAILED and event.message:
            self._emit(status_line("Warning", event.message.splitlines()[0]))

        if event.kind in (EventKind.INTEGRATING, EventKind.LINKING):
            self._active.insert(0, event.name)
        elif event.kind in _TERMINAL:
            if event.name in self._active:
                self._active.remove(event.name)
            bar.update(1)
        bar.set_postfix_str(", ".join(self._active), refresh=True)

    def _emit(self, line: str) -> None:
        if self.verbosity > 0:
            logger.info(line.strip())
        else:
            tqdm.write(line)


def write_failure_log(log_dir: Path, text: str) -> Path:
    """
    Write the full output of a failed tool to ``<log_dir>/CI-<ts>-<md5>.log``.

    Returns the path written.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    digest = hashlib.md5(text.encode("utf-8")).hexdigest()
    stamp = datetime.now().strftime("%y%m%dT%H%M%S")
    path = log_dir / f"CI-{stamp}-{digest}.log"
    path.write_text(text)
    return path

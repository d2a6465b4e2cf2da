"""
Fan-in of several watch event streams into one.

Each source is drained by its own forwarder thread into a shared bounded
queue. A supervisor thread joins the forwarders and enqueues a single end
marker once every source is exhausted, so a consumer sees end-of-stream only
after all sources have closed. Events are delivered in arrival order.
"""
import logging
import queue
import threading
from typing import Any, Callable, Iterable, Iterator, Sequence

from ..errors import MergeSourceError

logger = logging.getLogger(__name__)

_END = object()

# How long blocked queue operations wait before re-checking the stop flag.
POLL_INTERVAL = 0.1


class ScopedWatcher:
    """
    Merges N event sources into a single iterable stream.

    The set of sources is fixed at construction. ``stop()`` may be called any
    number of times from any thread; it ends iteration for the consumer and
    invokes the ``cancel`` callbacks given at construction (for example
    ``NamespaceWatch.close``). A callback must unblock a source stuck in a
    read; sources without one keep their forwarder alive until they close on
    their own.
    """

    def __init__(
        self,
        sources: Sequence[Iterable[Any]],
        cancel: Sequence[Callable[[], None]] = (),
        maxsize: int = 256,
    ) -> None:
        self._result: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._cancel = list(cancel)
        self._mutex = threading.Lock()
        self._stop_event = threading.Event()
        self._stopped = False
        self.done = threading.Event()

        self._forwarders = [
            threading.Thread(
                target=self._forward,
                args=(index, source),
                name=f"watch-merge-{index}",
                daemon=True,
            )
            for index, source in enumerate(sources)
        ]
        for forwarder in self._forwarders:
            forwarder.start()

        self._supervisor = threading.Thread(
            target=self._close_when_drained, name="watch-merge-supervisor", daemon=True
        )
        self._supervisor.start()

    def _put(self, item: Any) -> bool:
        while not self._stop_event.is_set():
            try:
                self._result.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _forward(self, index: int, source: Iterable[Any]) -> None:
        try:
            for event in source:
                if not self._put(event):
                    break
        except Exception as e:
            if self._stop_event.is_set():
                # Cancelling a source usually breaks its read.
                logger.debug(f"Watch source #{index} closed after stop: {e}")
                return
            error = MergeSourceError(f"Watch source #{index} ended abnormally: {e}")
            logger.warning(str(error), exc_info=True)

    def _close_when_drained(self) -> None:
        for forwarder in self._forwarders:
            forwarder.join()
        # The end marker must not be lost to a full queue; once stopped nobody
        # is reading anyway.
        self._put(_END)
        self.done.set()

    def stop(self) -> None:
        with self._mutex:
            if self._stopped:
                return
            self._stopped = True
            self._stop_event.set()
        for cancel in self._cancel:
            try:
                cancel()
            except Exception:
                logger.warning("Failed to cancel a watch source", exc_info=True)

    @property
    def stopped(self) -> bool:
        with self._mutex:
            return self._stopped

    def result_stream(self) -> Iterator[Any]:
        """Yield merged events until every source closes or ``stop()`` is called."""
        while not self._stop_event.is_set():
            try:
                item = self._result.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _END:
                return
            yield item

    def __iter__(self) -> Iterator[Any]:
        return self.result_stream()

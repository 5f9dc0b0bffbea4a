"""Background pump that turns a line source into two bounded channels.

One daemon thread per stream reads the source, feeds a parser and forwards
snapshots on ``metrics`` and faults on ``errors``. Both channels are closed
exactly once by the pump when it exits; consumers must drain both (or use an
auto-draining entry point) or the pump blocks on a full channel until the
stream is cancelled.
"""
from __future__ import annotations
import queue
import threading
from typing import Any, Callable, Iterable, Iterator, List, Optional

from ..debug_util import dbg
from ..errors import PowermetricsError, SourceReadError, StreamCancelled

_POLL_SECONDS = 0.1
_CLOSED = object()


class ChannelClosed(Exception):
    """Raised by Channel.get once the channel is closed and drained."""


class Channel:
    """Bounded FIFO with close semantics.

    put/offer block while full (backpressure); close() never blocks and is
    idempotent. Iterating yields items until the channel is closed and empty.
    """

    def __init__(self, maxsize: int):
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, maxsize))
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, item: Any, timeout: Optional[float] = None) -> bool:
        if self._closed.is_set():
            raise ChannelClosed('send on closed channel')
        try:
            self._queue.put(item, timeout=timeout)
        except queue.Full:
            return False
        return True

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # consumers fall back to closed + empty
            pass

    def get(self, timeout: Optional[float] = None) -> Any:
        """Next item; raises ChannelClosed when done, queue.Empty on timeout."""
        waited = 0.0
        while True:
            try:
                item = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    raise ChannelClosed()
                waited += _POLL_SECONDS
                if timeout is not None and waited >= timeout:
                    raise
                continue
            if item is _CLOSED:
                # leave the marker for any other consumer
                try:
                    self._queue.put_nowait(_CLOSED)
                except queue.Full:
                    pass
                raise ChannelClosed()
            return item

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.get()
            except ChannelClosed:
                return

    def drain(self) -> List[Any]:
        return list(self)


class MetricsStream:
    """Handle on a running pump: the two channels plus cancellation."""

    def __init__(self, metrics: Channel, errors: Channel, terminate: Optional[Callable[[], None]] = None):
        self.metrics = metrics
        self.errors = errors
        self._terminate = terminate
        self._terminated = False
        self._cancelled = threading.Event()
        self._reason = 'cancelled'
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = 'cancelled') -> None:
        """Request shutdown; also kills the producer so a blocked read returns."""
        if not self._cancelled.is_set():
            self._reason = reason
            self._cancelled.set()
        self.terminate()

    def terminate(self) -> None:
        with self._lock:
            if self._terminated or self._terminate is None:
                return
            self._terminated = True
        try:
            self._terminate()
        except OSError as e:  # already exited
            dbg(f'terminate failed: {e}')

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        self.join(timeout)
        return self.metrics.closed and self.errors.closed

    def send(self, channel: Channel, item: Any) -> bool:
        """Blocking send that gives up only once the stream is cancelled."""
        while not channel.offer(item, timeout=_POLL_SECONDS):
            if self._cancelled.is_set():
                dbg(f'dropping {type(item).__name__} after cancellation')
                return False
        return True

    def _report_cancelled(self, wait: Optional[Callable[[], Any]]) -> None:
        self.terminate()
        if not self.errors.offer(StreamCancelled(self._reason), timeout=_POLL_SECONDS):
            dbg('error channel full; cancellation not reported')
        if wait is not None:
            try:
                wait()
            except PowermetricsError as e:
                dbg(f'ignoring producer exit after cancel: {e}')


def _decode(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode('utf-8', errors='replace')
    return raw


def _pump(stream: MetricsStream, parser, reader: Iterable, wait: Optional[Callable[[], Any]]) -> None:
    lines = iter(reader)
    read_error: Optional[SourceReadError] = None
    try:
        while True:
            try:
                raw = next(lines)
            except StopIteration:
                break
            except Exception as e:  # any source fault ends the stream
                read_error = SourceReadError(f'reading powermetrics output: {e}')
                read_error.__cause__ = e
                break
            if stream.cancelled:
                stream._report_cancelled(wait)
                return
            snapshot = parser.parse_line(_decode(raw))
            if snapshot is not None and not stream.send(stream.metrics, snapshot):
                stream._report_cancelled(wait)
                return

        # a killed producer usually surfaces as EOF or a read fault
        if stream.cancelled:
            stream._report_cancelled(wait)
            return

        final = parser.flush_process_samples()
        if final is not None:
            stream.send(stream.metrics, final)
        if read_error is not None:
            dbg(f'source read fault: {read_error}')
            stream.send(stream.errors, read_error)
        if wait is not None:
            try:
                wait()
            except PowermetricsError as e:
                if not stream.cancelled:
                    stream.send(stream.errors, e)
    finally:
        stream.metrics.close()
        stream.errors.close()


def stream_from_reader(
    parser,
    reader: Iterable,
    wait: Optional[Callable[[], Any]] = None,
    terminate: Optional[Callable[[], None]] = None,
    metrics_buffer: int = 128,
    errors_buffer: int = 16,
) -> MetricsStream:
    """Start the pump thread for reader and return its stream handle.

    reader is any iterable of lines (bytes or str): a binary pipe, an open
    file or a plain list. wait is called once after EOF and should raise
    PowermetricsError (normally ProducerExitError) when the producer failed.
    """
    if reader is None:
        raise ValueError('powermetrics: reader cannot be None')
    stream = MetricsStream(Channel(metrics_buffer), Channel(errors_buffer), terminate=terminate)
    thread = threading.Thread(
        target=_pump, args=(stream, parser, reader, wait), name='PowermetricsPump', daemon=True
    )
    stream._thread = thread
    thread.start()
    return stream

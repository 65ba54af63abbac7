"""Server-sent event streams: incremental parsing and push/pull delivery."""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import httpx

from knowrithm.exceptions import StreamError

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "message"

Handler = Callable[..., Any]

_END = object()


@dataclass(frozen=True)
class StreamEvent:
    """One complete SSE frame."""

    event: str = DEFAULT_EVENT
    data: Any = ""
    id: str | None = None
    retry: int | None = None
    raw: str | None = None


@dataclass
class StreamingMetrics:
    """Lightweight metrics captured while reading a single stream."""

    first_chunk_time: float | None = None
    total_chunks: int = 0
    total_bytes: int = 0
    total_events: int = 0
    dropped_events: int = 0
    _start_time: float = 0.0

    @property
    def time_to_first_chunk_ms(self) -> float | None:
        if self._start_time and self.first_chunk_time is not None:
            return (self.first_chunk_time - self._start_time) * 1000
        return None

    def start(self) -> None:
        self._start_time = time.monotonic()

    def record_chunk(self, size: int) -> None:
        if self.first_chunk_time is None:
            self.first_chunk_time = time.monotonic()
        self.total_chunks += 1
        self.total_bytes += size


class SSEDecoder:
    """Incremental SSE framer.

    Bytes are decoded statefully, so a multi-byte character split across
    chunks is reassembled. Frames end at a blank line; the incomplete tail is
    kept until more bytes arrive or the stream ends.
    """

    __slots__ = ("parse_json", "_decoder", "_buffer", "_carry_cr")

    def __init__(self, parse_json: bool = True) -> None:
        self.parse_json = parse_json
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._carry_cr = False

    def _normalize(self, text: str) -> str:
        if self._carry_cr:
            text = "\r" + text
            self._carry_cr = False
        # A trailing CR may be the first half of a CRLF.
        if text.endswith("\r"):
            self._carry_cr = True
            text = text[:-1]
        return text.replace("\r\n", "\n").replace("\r", "\n")

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume a chunk and return the events it completed."""
        text = self._normalize(self._decoder.decode(chunk))
        if not text:
            return []
        self._buffer += text
        frames = self._buffer.split("\n\n")
        self._buffer = frames.pop()
        return self._parse_frames(frames)

    def flush(self) -> list[StreamEvent]:
        """Treat whatever is buffered as a final frame."""
        tail = self._decoder.decode(b"", final=True)
        if self._carry_cr:
            tail += "\n"
            self._carry_cr = False
        self._buffer += tail.replace("\r\n", "\n").replace("\r", "\n")
        remaining, self._buffer = self._buffer, ""
        return self._parse_frames(remaining.split("\n\n"))

    def _parse_frames(self, frames: Iterable[str]) -> list[StreamEvent]:
        events = []
        for frame in frames:
            if not frame.strip():
                continue
            event = self.parse_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def parse_frame(self, frame: str) -> StreamEvent | None:
        """Parse one frame; frames with only comments or unknown lines yield None."""
        name: str | None = None
        data_lines: list[str] = []
        event_id: str | None = None
        retry: int | None = None
        seen = False

        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, sep, value = line.partition(":")
            if not sep:
                continue
            if value.startswith(" "):
                value = value[1:]

            if field == "event":
                seen = True
                if value:
                    name = value
            elif field == "data":
                seen = True
                data_lines.append(value)
            elif field == "id":
                seen = True
                if value:
                    event_id = value
            elif field == "retry":
                seen = True
                if value.isascii() and value.isdigit():
                    retry = int(value)

        if not seen:
            return None

        raw = "\n".join(data_lines)
        data: Any = raw
        if raw and self.parse_json:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = raw

        return StreamEvent(
            event=name or DEFAULT_EVENT,
            data=data,
            id=event_id,
            retry=retry,
            raw=raw or None,
        )


class MessageStream:
    """A live event stream with callback and async-iterator consumption.

    Push delivery is the single source of truth: every emitted event goes to
    the subscribed handlers and into an internal queue that backs
    ``async for``. Nothing is dropped; events wait in the queue until pulled.

    Usage:
        stream.on("delta", lambda data: print(data["t"], end=""))
        stream.on_end(lambda: print())
        async for event in stream:
            ...
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        url: str,
        *,
        response: httpx.Response | None = None,
        accepted_events: Iterable[str] | None = None,
        parse_json: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._source = source
        self._response = response
        self.url = url
        self.accepted_events = frozenset(accepted_events) if accepted_events is not None else None
        self._decoder = SSEDecoder(parse_json=parse_json)
        self._metadata = dict(metadata or {})
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._any_handlers: list[Handler] = []
        self._end_handlers: list[Handler] = []
        self._error_handlers: list[Handler] = []
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._reader: asyncio.Task[None] | None = None
        self._release_task: asyncio.Task[None] | None = None
        self._released = False
        self._closed = False
        self.metrics = StreamingMetrics()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @property
    def metadata(self) -> dict[str, Any]:
        return self._metadata

    @property
    def task_id(self) -> str | None:
        return self._metadata.get("task_id")

    @property
    def message_id(self) -> str | None:
        return self._metadata.get("message_id")

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscribe(self, handlers: list[Handler], handler: Handler) -> Callable[[], None]:
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to one event name; the handler receives the event data."""
        return self._subscribe(self._handlers[event], handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def on_event(self, handler: Handler) -> Callable[[], None]:
        """Subscribe to every event; the handler receives the StreamEvent."""
        return self._subscribe(self._any_handlers, handler)

    def on_end(self, handler: Handler) -> Callable[[], None]:
        return self._subscribe(self._end_handlers, handler)

    def on_error(self, handler: Handler) -> Callable[[], None]:
        return self._subscribe(self._error_handlers, handler)

    async def _fire(self, handlers: list[Handler], *args: Any) -> None:
        for handler in list(handlers):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Unhandled exception in stream handler: %s", e, exc_info=True)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start reading the source in a background task (idempotent)."""
        if self._reader is not None or self._closed:
            return
        self.metrics.start()
        self._reader = asyncio.get_running_loop().create_task(self._read())

    async def _emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        if self.accepted_events is not None and event.event not in self.accepted_events:
            self.metrics.dropped_events += 1
            return
        self.metrics.total_events += 1
        await self._fire(self._any_handlers, event)
        if self._closed:
            return
        await self._fire(self._handlers.get(event.event, []), event.data)
        if self._closed:
            return
        self._queue.put_nowait(event)

    async def _read(self) -> None:
        try:
            async for chunk in self._source:
                if self._closed:
                    return
                self.metrics.record_chunk(len(chunk))
                for event in self._decoder.feed(chunk):
                    await self._emit(event)
                    # A handler may have closed the stream; stop before the next read.
                    if self._closed:
                        return
            for event in self._decoder.flush():
                await self._emit(event)
            if not self._closed:
                await self._fire(self._end_handlers)
                self._queue.put_nowait(_END)
        except Exception as e:
            if not self._closed:
                error = e if isinstance(e, StreamError) else StreamError(f"Stream failed: {e}", url=self.url)
                logger.warning("Stream %s failed: %s", self.url, e)
                await self._fire(self._error_handlers, error)
                self._queue.put_nowait(error)
        finally:
            self._shutdown(discard_pending=False)
            await self._release()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._response is not None:
            await self._response.aclose()
            return
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def _shutdown(self, discard_pending: bool) -> None:
        if self._closed:
            return
        self._closed = True
        self._handlers.clear()
        self._any_handlers.clear()
        self._end_handlers.clear()
        self._error_handlers.clear()
        if discard_pending:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(_END)

    def close(self) -> None:
        """Stop the stream: no further events, handlers detached, source released.

        Idempotent and safe to call from inside an event handler.
        """
        if self._closed:
            return
        self._shutdown(discard_pending=True)
        reader = self._reader
        if reader is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            self._release_task = loop.create_task(self._release())
            return
        if reader is not asyncio.current_task() and not reader.done():
            # The reader's finally block releases the source.
            reader.cancel()

    async def aclose(self) -> None:
        """Close and wait until the underlying source is released."""
        self.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._release_task is not None:
            await self._release_task
        elif self._reader is None:
            await self._release()

    async def wait_closed(self) -> None:
        """Wait until the stream has ended, failed or been closed."""
        self.start()
        if self._reader is not None:
            try:
                await asyncio.shield(self._reader)
            except asyncio.CancelledError:
                if not self._closed:
                    raise

    async def __aenter__(self) -> "MessageStream":
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Pull interface
    # ------------------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        self.start()
        while True:
            if self._closed and self._queue.empty():
                return
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

"""
Streaming delivery.

Three pieces:
- Line producers that run on a worker thread against an open engine stream:
  ``passthrough_lines`` (verbatim NDJSON) and ``progressive_lines``
  (fixed-size reassembled chunks driven by a ``StreamSession``).
- ``relay``: a bounded channel from that worker thread to the event loop.
  The worker blocks while the channel is full, so a stalled client stalls the
  engine read instead of growing a buffer. Closing the consuming generator
  (client went away) stops the worker and closes the engine stream. A reader
  that takes nothing for the stall timeout is abandoned the same way.
- ``build_resumption_messages``: the continuation prompt for cut-off answers.
  Whether the engine avoids repeating itself is up to the model; nothing
  here verifies it.
"""

import asyncio
import concurrent.futures
import json
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterator, List, Optional, Sequence

from .clients.base import EngineStream
from .exceptions import GatewayError, InvalidRequest
from .models.message import ConversationMessage
from .service.logging import get_service_logger

log = get_service_logger(__name__)

DONE_LINE = "DONE\n"

RESUME_PROMPT = (
    "Please continue this response where it was interrupted:\n\n"
    "\"{partial}\"\n\n"
    "Continue from exactly where it left off without repeating any content:"
)


# =============================================================================
# Progressive chunking
# =============================================================================

@dataclass(frozen=True)
class Chunk:
    index: int
    text: str

    def render(self) -> str:
        return f"CHUNK_{self.index}: {self.text}\n\n"


class StreamSession:
    """Per-request reassembly buffer for progressive delivery.

    Sizes are counted in characters of decoded text.
    """

    def __init__(self, chunk_size: int):
        if chunk_size <= 0:
            raise InvalidRequest(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.buffer = ""
        self.chunk_index = 0

    def feed(self, text: str) -> List[Chunk]:
        """Add engine text; return every full chunk now available."""
        self.buffer += text
        chunks = []
        while len(self.buffer) >= self.chunk_size:
            chunks.append(self._emit(self.buffer[:self.chunk_size]))
            self.buffer = self.buffer[self.chunk_size:]
        return chunks

    def flush(self) -> List[Chunk]:
        """Emit whatever is left as a final, possibly short, chunk."""
        if not self.buffer:
            return []
        chunk = self._emit(self.buffer)
        self.buffer = ""
        return [chunk]

    def _emit(self, text: str) -> Chunk:
        chunk = Chunk(self.chunk_index, text)
        self.chunk_index += 1
        log.stream_chunk(chunk.index, len(text))
        return chunk


def _fragment_text(data: dict) -> str:
    """Token text of one engine line, for both chat and generate streams."""
    message = data.get("message")
    if isinstance(message, dict):
        return message.get("content") or ""
    return data.get("response") or ""


def progressive_lines(stream: EngineStream, chunk_size: int) -> Iterator[str]:
    """Re-chunk an engine stream into ``CHUNK_<n>: ...`` lines ending in ``DONE``.

    Malformed lines are skipped. An engine error, or a failure reading the
    stream, produces one ``ERROR: ...`` line and ends the output.
    """
    session = StreamSession(chunk_size)
    try:
        for raw in stream.iter_lines():
            if not raw or not raw.strip():
                continue
            try:
                data = json.loads(raw)
            except (ValueError, UnicodeDecodeError) as e:
                log.stream_parse_error(raw, str(e))
                continue
            if not isinstance(data, dict):
                log.stream_parse_error(raw, "not a JSON object")
                continue

            if "error" in data:
                log.error(f"Engine stream error: {data['error']}")
                yield f"ERROR: {data['error']}\n"
                return

            text = _fragment_text(data)
            if text:
                for chunk in session.feed(text):
                    yield chunk.render()

            if data.get("done"):
                for chunk in session.flush():
                    yield chunk.render()
                yield DONE_LINE
                return

        # Engine closed the stream without a done marker
        for chunk in session.flush():
            yield chunk.render()
        yield "ERROR: engine stream ended before completion\n"
    except GatewayError as e:
        log.error(f"Progressive stream failed: {e.detail}")
        yield f"ERROR: {e.detail}\n"
    finally:
        stream.close()


def passthrough_lines(stream: EngineStream) -> Iterator[bytes]:
    """Forward engine NDJSON lines unchanged."""
    try:
        for raw in stream.iter_lines():
            if raw:
                yield raw + b"\n"
    except GatewayError as e:
        log.error(f"Pass-through stream failed: {e.detail}")
        # Same shape Ollama uses for its own in-stream errors
        yield json.dumps({"error": e.detail}).encode() + b"\n"
    finally:
        stream.close()


# =============================================================================
# Resumption
# =============================================================================

def build_resumption_messages(
    messages: Sequence[ConversationMessage],
    partial_response: str,
) -> List[ConversationMessage]:
    """History plus a new user turn asking to continue ``partial_response``."""
    continuation = ConversationMessage("user", RESUME_PROMPT.format(partial=partial_response))
    return [*messages, continuation]


# =============================================================================
# Thread -> event loop channel
# =============================================================================

_END = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


async def relay(
    produce: Callable[[], Iterator],
    executor: concurrent.futures.Executor,
    queue_size: int = 64,
    stall_timeout: Optional[float] = None,
) -> AsyncIterator:
    """Run a blocking iterator on ``executor`` and yield its items here.

    Args:
        produce: Called on the worker thread to obtain the iterator.
        executor: Where the blocking iteration runs.
        queue_size: Channel bound; the worker waits while it is full.
        stall_timeout: Longest the worker waits on a full channel. Past it
            the stream is abandoned: the iterator is closed, the worker is
            released and the reader gets what was already queued.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
    cancel = threading.Event()
    stalled = False

    def _abandon():
        # Runs on the loop; a full queue means the reader still has items to take
        nonlocal stalled
        if queue.full():
            stalled = True
        else:
            queue.put_nowait(_END)

    def _put(item) -> bool:
        if cancel.is_set():
            return False
        future = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
        deadline = None if stall_timeout is None else time.monotonic() + stall_timeout
        while True:
            try:
                future.result(timeout=0.25)
                return True
            except concurrent.futures.TimeoutError:
                if cancel.is_set():
                    future.cancel()
                    return False
                if deadline is not None and time.monotonic() >= deadline:
                    future.cancel()
                    cancel.set()
                    log.stream_closed(f"reader stalled for {stall_timeout}s")
                    if not loop.is_closed():
                        loop.call_soon_threadsafe(_abandon)
                    return False
            except concurrent.futures.CancelledError:
                # Event loop shut down with the put still pending
                return False

    def _pump():
        iterator = None
        try:
            iterator = produce()
            for item in iterator:
                if not _put(item):
                    break
        except Exception as e:
            _put(_Failure(e))
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
            _put(_END)

    loop.run_in_executor(executor, _pump)
    finished = False
    try:
        while True:
            if stalled and queue.empty():
                finished = True
                break
            item = await queue.get()
            if item is _END:
                finished = True
                break
            if isinstance(item, _Failure):
                finished = True
                raise item.error
            yield item
    finally:
        if not finished:
            log.stream_closed("client stopped reading")
        cancel.set()

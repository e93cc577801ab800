"""HTTP interceptor that turns model API calls into trace spans.

``TracingTransport`` wraps any ``httpx.AsyncBaseTransport``. For requests
to a traced host it starts a span before the request leaves, publishes the
span id so subprocesses spawned while the call is in flight can link to
it, and tees the response through a ``StreamAccumulator``. Recording the
finished span is scheduled as a task so the caller's stream is never held
up by persistence.
"""

import asyncio
import json
import logging
import os
import threading
import time
from typing import Any, AsyncIterator

import httpx

from .config import TraceConfig
from .models import SpanRecord
from .propagation import ENV_BIN, SpanContext
from .stream import PREVIEW_CHARS, StreamAccumulator, inspect_request, parse_message_response
from .trace import SpanLedger

logger = logging.getLogger(__name__)

DEFAULT_HOSTS = ("api.anthropic.com",)


# ─────────────────────────────────────────────────────────────────────────────
# Recorders
# ─────────────────────────────────────────────────────────────────────────────


class CliSpanRecorder:
    """Persists spans by running the ``reasongraph`` CLI as a subprocess.

    Each call inherits the CLI's own database locking. Spawn failures and
    non-zero exits are retried with backoff; after the last attempt the
    record is dropped and logged, never raised.
    """

    def __init__(
        self,
        binary: str | None = None,
        attempts: int = 3,
        backoff: float = 0.1,
        env: dict[str, str] | None = None,
    ):
        self.binary = binary or os.environ.get(ENV_BIN) or "reasongraph"
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.env = env

    async def _run(self, args: list[str], stdin: bytes | None = None) -> dict[str, Any] | None:
        delay = self.backoff
        for attempt in range(1, self.attempts + 1):
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.binary,
                    *args,
                    stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self.env,
                )
                out, err = await proc.communicate(stdin)
                if proc.returncode == 0:
                    text = out.decode("utf-8", errors="replace").strip()
                    return json.loads(text.splitlines()[-1]) if text else {}
                logger.debug(
                    f"{self.binary} {' '.join(args[:2])} exited {proc.returncode}: "
                    f"{err.decode('utf-8', errors='replace').strip()[:200]}"
                )
            except (OSError, ValueError) as e:
                logger.debug(f"{self.binary} {' '.join(args[:2])} failed (attempt {attempt}): {e}")
            if attempt < self.attempts:
                await asyncio.sleep(delay)
                delay *= 2
        logger.warning(f"Dropping trace call '{' '.join(args[:2])}' after {self.attempts} attempts")
        return None

    async def start_session(self, command: str | None = None) -> str | None:
        args = ["trace", "start"]
        if command:
            args += ["--command", command]
        result = await self._run(args)
        return result.get("session_id") if result else None

    async def start_span(self, session_id: str) -> int | None:
        result = await self._run(["trace", "start-span", "--session", session_id])
        return result.get("span_id") if result else None

    async def record(self, session_id: str, span_id: int | None, record: SpanRecord) -> int | None:
        args = ["trace", "record", "--session", session_id, "--stdin"]
        if span_id is not None:
            args += ["--span-id", str(span_id)]
        result = await self._run(args, stdin=record.model_dump_json(exclude_none=True).encode())
        return result.get("span_id") if result else None

    async def end_session(self, session_id: str, summary: str | None = None) -> None:
        args = ["trace", "end", "--session", session_id]
        if summary:
            args += ["--summary", summary]
        await self._run(args)


class LedgerSpanRecorder:
    """In-process recorder writing to a ``SpanLedger``.

    Ledger calls block on SQLite (including lock backoff), so they run in a
    worker thread, serialised because the ledger shares one connection.
    """

    def __init__(self, ledger: SpanLedger):
        self.ledger = ledger
        self._lock = threading.Lock()

    def _locked(self, fn, *args, **kwargs):
        with self._lock:
            return fn(*args, **kwargs)

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(self._locked, fn, *args, **kwargs)

    async def start_session(self, command: str | None = None) -> str | None:
        session = await self._call(self.ledger.start_session, command=command)
        return session.session_id

    async def start_span(self, session_id: str) -> int | None:
        return (await self._call(self.ledger.start_span, session_id)).id

    async def record(self, session_id: str, span_id: int | None, record: SpanRecord) -> int | None:
        if span_id is None:
            span_id = await self.start_span(session_id)
        return (await self._call(self.ledger.complete_span, span_id, record)).id

    async def end_session(self, session_id: str, summary: str | None = None) -> None:
        await self._call(self.ledger.end_session, session_id, summary)


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────


class AccumulatingStream(httpx.AsyncByteStream):
    """Passes chunks through unchanged while feeding a copy to an accumulator."""

    def __init__(self, stream: httpx.AsyncByteStream, accumulator: StreamAccumulator, on_complete):
        self._stream = stream
        self._accumulator = accumulator
        self._on_complete = on_complete
        self._done = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._stream:
            try:
                self._accumulator.feed(chunk)
            except Exception as e:  # the caller's stream must survive a parser bug
                logger.debug(f"Stream accumulator failed on chunk: {e}")
            yield chunk
        if not self._done:
            self._done = True
            try:
                self._on_complete()
            except Exception as e:
                logger.warning(f"Could not finish span from stream: {e}")

    async def aclose(self) -> None:
        await self._stream.aclose()


class TracingTransport(httpx.AsyncBaseTransport):
    """Transport wrapper that records traced requests as spans."""

    def __init__(
        self,
        recorder,
        context: SpanContext | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        hosts: tuple[str, ...] | list[str] = DEFAULT_HOSTS,
        preview_chars: int = PREVIEW_CHARS,
        publish_env: bool = True,
    ):
        """Wrap a transport.

        Args:
            recorder: CliSpanRecorder, LedgerSpanRecorder or compatible
            context: Current trace context (read from the environment if omitted)
            transport: The real transport (a fresh AsyncHTTPTransport if omitted)
            hosts: Hostnames whose requests are traced
            preview_chars: Length of stored previews
            publish_env: Also write the span id into os.environ for subprocesses
        """
        self.recorder = recorder
        self.context = context if context is not None else SpanContext.from_environ()
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.hosts = tuple(hosts)
        self.preview_chars = preview_chars
        self.publish_env = publish_env
        self._pending: set[asyncio.Task] = set()

    def _is_traced(self, request: httpx.Request) -> bool:
        return request.url.host in self.hosts

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self._is_traced(request):
            return await self._transport.handle_async_request(request)

        # Tracing failures leave the call untraced; the request still goes out
        if self.context.session_id is None:
            try:
                session_id = await self.recorder.start_session()
            except Exception as e:
                logger.warning(f"Could not start trace session: {e}")
                session_id = None
            if session_id:
                self.context = self.context.with_session(session_id)

        session_id = self.context.session_id
        span_id = None
        if session_id:
            try:
                span_id = await self.recorder.start_span(session_id)
            except Exception as e:
                logger.warning(f"Could not start span in session {session_id}: {e}")
        # The span stays ambient after completion until the next one starts
        self.context = self.context.with_span(span_id)
        if self.publish_env:
            self.context.publish()

        try:
            body = json.loads(await request.aread() or b"{}")
        except ValueError:
            body = {}
        request_fields = inspect_request(body, self.preview_chars) if isinstance(body, dict) else {}

        started = time.monotonic()
        response = await self._transport.handle_async_request(request)
        if not session_id:
            return response

        def finish(record: SpanRecord):
            duration = int((time.monotonic() - started) * 1000)
            updates = {k: v for k, v in request_fields.items() if v is not None}
            if record.model:
                updates.pop("model", None)
            updates["duration_ms"] = duration
            self._schedule(session_id, span_id, record.model_copy(update=updates))

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            accumulator = StreamAccumulator(self.preview_chars)
            return httpx.Response(
                status_code=response.status_code,
                headers=response.headers,
                stream=AccumulatingStream(
                    response.stream, accumulator, lambda: finish(accumulator.finalize())
                ),
                extensions=response.extensions,
                request=request,
            )

        raw = b"".join([chunk async for chunk in response.stream])
        await response.stream.aclose()
        rebuilt = httpx.Response(
            status_code=response.status_code,
            headers=response.headers,
            content=raw,
            extensions=response.extensions,
            request=request,
        )
        try:
            data = rebuilt.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("type") == "message":
            finish(parse_message_response(data, self.preview_chars))
        else:
            finish(SpanRecord(stop_reason=f"http_{response.status_code}"))
        return rebuilt

    def _schedule(self, session_id: str, span_id: int | None, record: SpanRecord):
        task = asyncio.get_running_loop().create_task(self._record(session_id, span_id, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record(self, session_id: str, span_id: int | None, record: SpanRecord):
        try:
            await self.recorder.record(session_id, span_id, record)
        except Exception as e:  # recording must never reach the caller
            logger.warning(f"Failed to record span {span_id}: {e}")

    async def drain(self) -> None:
        """Wait for scheduled span recordings to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def aclose(self) -> None:
        await self.drain()
        await self._transport.aclose()


def traced_client(
    recorder=None,
    context: SpanContext | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    config: TraceConfig | None = None,
    **kwargs,
) -> httpx.AsyncClient:
    """Build an ``httpx.AsyncClient`` whose model API calls are traced.

    Hosts, preview length and recorder retries come from the ``trace``
    section of ``config.yaml`` when a config is given.
    """
    config = config or TraceConfig()
    if recorder is None:
        recorder = CliSpanRecorder(
            attempts=config.record_attempts, backoff=config.record_backoff_seconds
        )
    return httpx.AsyncClient(
        transport=TracingTransport(
            recorder,
            context=context,
            transport=transport,
            hosts=config.hosts,
            preview_chars=config.preview_chars,
        ),
        **kwargs,
    )

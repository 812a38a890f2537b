from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError

from .models import ConnectionState, RunDecodeError, RunSnapshot, WebhookEvent

logger = logging.getLogger("runwatch.relay")

EventHandler = Callable[[WebhookEvent], Union[None, Awaitable[None]]]
StateHandler = Callable[[ConnectionState], None]
SleepFn = Callable[[float], Awaitable[Any]]


class ChannelProvisioningError(RuntimeError):
    """The relay did not hand out a fresh channel URL."""


class RelayStreamError(RuntimeError):
    pass


@dataclass(frozen=True)
class SseFrame:
    event: Optional[str]
    data: str


class SseLineBuffer:
    """
    Reassembles complete lines from arbitrarily split text chunks.

    A chunk may end mid-line (or between `\\r` and `\\n`); the remainder is
    kept until the next `feed`.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        lines: list[str] = []
        start = 0
        buf = self._buffer
        i = 0
        n = len(buf)
        while i < n:
            ch = buf[i]
            if ch == "\n":
                lines.append(buf[start:i])
                i += 1
                start = i
                continue
            if ch == "\r":
                if i + 1 >= n:
                    # Could be the first half of "\r\n"; wait for more input.
                    break
                lines.append(buf[start:i])
                i += 2 if buf[i + 1] == "\n" else 1
                start = i
                continue
            i += 1
        self._buffer = buf[start:]
        return lines


class SseFrameParser:
    """Accumulates `field: value` lines into event frames."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: list[str] = []

    def reset(self) -> None:
        self._event = None
        self._data = []

    def feed_line(self, line: str) -> Optional[SseFrame]:
        if line == "":
            frame = None
            if self._data:
                frame = SseFrame(event=self._event, data="\n".join(self._data))
            self.reset()
            return frame
        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event = line[len("event:") :].strip()
            return None
        if line.startswith("data:"):
            self._data.append(line[len("data:") :].strip())
            return None
        # id:, retry: and anything else are not used.
        return None


class _RepositoryRef(BaseModel):
    full_name: str


class _WebhookPayload(BaseModel):
    action: Optional[str] = None
    workflow_run: Optional[dict[str, Any]] = None
    repository: Optional[_RepositoryRef] = None


def _unwrap_envelope(data: str) -> Optional[Any]:
    try:
        outer = json.loads(data)
    except ValueError:
        return None
    if not isinstance(outer, dict):
        return None

    body = outer.get("body")
    if body is None:
        # No envelope: the frame itself may be the GitHub payload.
        return outer
    if isinstance(body, dict):
        return body
    if isinstance(body, str):
        # Double-encoded payload.
        try:
            return json.loads(body)
        except ValueError:
            return None
    return None


def parse_webhook_event(data: str) -> Optional[WebhookEvent]:
    """
    Decode a relay frame into a `WebhookEvent`.

    Returns None for anything that is not a workflow_run delivery (pings,
    other webhook kinds, malformed JSON); never raises.
    """

    payload = _unwrap_envelope(data)
    if not isinstance(payload, dict):
        return None
    try:
        parsed = _WebhookPayload.model_validate(payload)
    except ValidationError:
        return None
    if parsed.workflow_run is None or parsed.repository is None:
        return None
    try:
        run = RunSnapshot.from_api(parsed.workflow_run)
    except RunDecodeError:
        return None
    return WebhookEvent(
        action=parsed.action or "unknown",
        run=run,
        repository_full_name=parsed.repository.full_name,
    )


async def create_channel(
    new_url: str = "https://smee.io/new",
    *,
    timeout_sec: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Provision a fresh relay channel.

    The relay answers `HEAD /new` with a redirect whose Location is the new
    channel. Redirects are not followed; the Location must stay on the relay host.
    """

    base = httpx.URL(new_url)
    expected_prefix = f"{base.scheme}://{base.netloc.decode('ascii')}/"
    try:
        async with httpx.AsyncClient(
            follow_redirects=False,
            timeout=timeout_sec,
            transport=transport,
        ) as client:
            resp = await client.head(new_url)
    except httpx.HTTPError as exc:
        raise ChannelProvisioningError("Failed to create relay channel.") from exc

    location = resp.headers.get("Location") or ""
    if not (300 <= resp.status_code < 400) or not location.startswith(expected_prefix):
        raise ChannelProvisioningError("Failed to create relay channel.")
    return location


class RelayBackoff:
    """Doubling reconnect delay: 1, 2, 4, ... capped at `maximum`."""

    def __init__(self, initial: float = 1.0, maximum: float = 60.0):
        self._initial = float(initial)
        self._maximum = float(maximum)
        self._current = self._initial

    @property
    def current(self) -> float:
        return self._current

    def reset(self) -> None:
        self._current = self._initial

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * 2, self._maximum)
        return delay


class RelayClient:
    """
    Keeps a streaming connection to a relay channel open for the life of the
    session, reconnecting with exponential backoff.

    Backoff restarts at the initial delay on every `start` and after any
    attempt that reached `connected`; it only grows across attempts that never
    received data.
    """

    def __init__(
        self,
        *,
        on_event: Optional[EventHandler] = None,
        on_state_changed: Optional[StateHandler] = None,
        read_timeout_sec: float = 300.0,
        connect_timeout_sec: float = 30.0,
        backoff_initial_sec: float = 1.0,
        backoff_max_sec: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._on_event = on_event
        self._on_state_changed = on_state_changed
        self._read_timeout_sec = float(read_timeout_sec)
        self._connect_timeout_sec = float(connect_timeout_sec)
        self._backoff_initial_sec = float(backoff_initial_sec)
        self._backoff_max_sec = float(backoff_max_sec)
        self._transport = transport
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._state = ConnectionState.DISCONNECTED
        self._channel_url: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channel_url(self) -> Optional[str]:
        return self._channel_url

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, channel_url: str) -> None:
        await self.stop()
        self._channel_url = channel_url
        logger.info("relay starting", extra={"reason": "start"})
        self._task = asyncio.create_task(self._connection_loop(channel_url))

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        logger.debug("relay state changed", extra={"state": state.value})
        if self._on_state_changed is None:
            return
        try:
            self._on_state_changed(state)
        except Exception:
            logger.exception(
                "connection state handler failed",
                extra={"err_id": "ERR-RUNWATCH-0009", "msg_id": "MSG-RUNWATCH-0009", "state": state.value},
            )

    async def _connection_loop(self, url: str) -> None:
        backoff = RelayBackoff(self._backoff_initial_sec, self._backoff_max_sec)
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._stream(url)
                logger.info("relay stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Transient: logged, never surfaced; the loop retries forever.
                logger.warning(
                    "relay connection error",
                    extra={
                        "err_id": "ERR-RUNWATCH-0004",
                        "msg_id": "MSG-RUNWATCH-0004",
                        "reason": f"{type(exc).__name__}: {exc}",
                    },
                )

            if self._state is ConnectionState.CONNECTED:
                backoff.reset()
            self._set_state(ConnectionState.DISCONNECTED)

            delay = backoff.next_delay()
            logger.info("relay reconnect scheduled", extra={"backoff_sec": delay})
            await self._sleep(delay)

    async def _stream(self, url: str) -> None:
        timeout = httpx.Timeout(self._connect_timeout_sec, read=self._read_timeout_sec)
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            async with client.stream("GET", url, headers=headers) as resp:
                if resp.status_code >= 400:
                    raise RelayStreamError(f"relay responded with HTTP {resp.status_code}")
                lines = SseLineBuffer()
                parser = SseFrameParser()
                async for chunk in resp.aiter_text():
                    if not chunk:
                        continue
                    if self._state is not ConnectionState.CONNECTED:
                        self._set_state(ConnectionState.CONNECTED)
                        logger.info("relay connected")
                    for line in lines.feed(chunk):
                        frame = parser.feed_line(line)
                        if frame is not None:
                            await self._dispatch(frame)

    async def _dispatch(self, frame: SseFrame) -> None:
        if frame.event not in (None, "message"):
            logger.debug("skipping relay frame", extra={"reason": f"event={frame.event}"})
            return
        event = parse_webhook_event(frame.data)
        if event is None:
            logger.debug("relay frame carried no workflow_run event")
            return
        logger.info(
            "webhook event received",
            extra={"run_id": event.run.id, "repo": event.repository_full_name, "reason": event.action},
        )
        if self._on_event is None:
            return
        try:
            result = self._on_event(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "webhook event handler failed",
                extra={"err_id": "ERR-RUNWATCH-0005", "msg_id": "MSG-RUNWATCH-0005", "run_id": event.run.id},
            )

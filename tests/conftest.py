"""Fake collaborators shared by the voice router tests."""

from __future__ import annotations

import asyncio
import json
import sys
import threading
import types
from typing import Optional

import numpy as np
import pytest
import websockets

from voice_router.backend import Reply
from voice_router.capture import CaptureSession
from voice_router.config import CaptureConfig
from voice_router.coordinator import DispatchCoordinator, SessionState
from voice_router.playback import PlaybackController

QUIET_MS = 50


class FakeRecognizer:
    """Records start/stop calls; tests push recognition events through it."""

    def __init__(self, fail: bool = False, auto_end: bool = True):
        self.fail = fail
        self.auto_end = auto_end
        self.starts = 0
        self.stops = 0
        self.running = False
        self.on_event = None
        self.on_end = None

    async def start(self, on_event, on_end) -> None:
        self.starts += 1
        if self.fail:
            raise RuntimeError("microphone busy")
        self.on_event = on_event
        self.on_end = on_end
        self.running = True

    def stop(self) -> None:
        self.stops += 1
        self.running = False
        if self.auto_end and self.on_end is not None:
            asyncio.get_running_loop().call_soon(self.on_end)

    def emit(self, payload) -> None:
        self.on_event(payload)


class FakePlayer:
    """outcome: 'done' completes on the next tick, 'error' fails, 'manual' waits for finish()."""

    def __init__(self, outcome: str = "done"):
        self.outcome = outcome
        self.played: list[tuple[bytes, str]] = []
        self.stops = 0
        self._on_done = None
        self._on_error = None

    def start(self, audio, mime_type, on_done, on_error) -> None:
        self.played.append((audio, mime_type))
        self._on_done = on_done
        self._on_error = on_error
        loop = asyncio.get_running_loop()
        if self.outcome == "done":
            loop.call_soon(on_done)
        elif self.outcome == "error":
            loop.call_soon(on_error, RuntimeError("output device lost"))

    def finish(self) -> None:
        self._on_done()

    def stop(self) -> None:
        self.stops += 1


class FakeBackend:
    def __init__(self, errors=(), reply_model: Optional[str] = None):
        self.calls: list[tuple[str, Optional[str]]] = []
        self.errors = list(errors)
        self.reply_model = reply_model
        self.hold: Optional[asyncio.Event] = None

    async def generate_reply(self, text, model_id) -> Reply:
        self.calls.append((text, model_id))
        if self.hold is not None:
            await self.hold.wait()
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        return Reply(audio=b"ID3-reply", content_type="audio/mp3", model_id=self.reply_model or model_id)


def browser_events(fragments):
    """Cumulative events the way a continuous recognizer emits them."""
    events = []
    for i in range(len(fragments)):
        events.append({
            "resultIndex": i,
            "results": [{"alternatives": [{"transcript": f}]} for f in fragments[: i + 1]],
        })
    return events


async def speak(recognizer: FakeRecognizer, fragments, gap: float = 0.01) -> None:
    for event in browser_events(fragments):
        recognizer.emit(event)
        await asyncio.sleep(gap)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def wait_for_state(coordinator: DispatchCoordinator, state: SessionState, timeout: float = 1.0) -> None:
    """Only for states that persist (IDLE, LISTENING, or a held DISPATCHING/PLAYING)."""
    await wait_until(lambda: coordinator.state is state, timeout)


class Rig:
    """A coordinator wired to fakes, plus an invariant check on every transition."""

    def __init__(self, recognizer=None, player=None, backend=None, **kwargs):
        self.recognizer = recognizer or FakeRecognizer()
        self.player = player or FakePlayer()
        self.backend = backend or FakeBackend()
        self.capture = CaptureSession(self.recognizer, CaptureConfig(quiet_period_ms=QUIET_MS))
        self.playback = PlaybackController(self.player)
        self.states: list[SessionState] = []
        self.errors: list[Exception] = []
        self.violations: list[SessionState] = []
        self.coordinator = DispatchCoordinator(
            self.capture,
            self.playback,
            self.backend,
            on_state_change=self._on_state,
            on_error=self.errors.append,
            **kwargs,
        )

    def _on_state(self, state: SessionState) -> None:
        self.states.append(state)
        if state in (SessionState.DISPATCHING, SessionState.PLAYING) and self.capture.active:
            self.violations.append(state)


@pytest.fixture()
def rig_factory():
    return Rig


# ---------------------------------------------------------------------------
# Audio devices and the Deepgram socket
# ---------------------------------------------------------------------------

class FakeInputStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.running = False
        self.closed = False

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def close(self) -> None:
        self.closed = True

    def feed(self, samples: np.ndarray) -> None:
        """Deliver one block the way the PortAudio thread would."""
        self.kwargs["callback"](samples, len(samples), None, None)


class FakeOutputStream:
    """Pulls blocks through the player's callback on its own thread, like PortAudio."""

    def __init__(self, sd_module: "FakeSoundDevice", **kwargs):
        self._device = sd_module
        self.kwargs = kwargs
        self.blocks: list[np.ndarray] = []
        self.closed = False
        self._finished = False
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._device.autoplay:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def _run(self) -> None:
        frames, channels = self.kwargs["blocksize"], self.kwargs["channels"]
        while True:
            outdata = np.ones((frames, channels), dtype=np.float32)
            try:
                self.kwargs["callback"](outdata, frames, None, None)
            except self._device.CallbackStop:
                self.blocks.append(outdata)
                break
            self.blocks.append(outdata)
        self.finish()

    def finish(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
        self.kwargs["finished_callback"]()

    def stop(self) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self.finish()

    def close(self) -> None:
        self.closed = True


class FakeSoundDevice(types.ModuleType):
    class CallbackStop(Exception):
        pass

    def __init__(self):
        super().__init__("sounddevice")
        self.autoplay = True
        self.fail_input = False
        self.fail_output = False
        self.inputs: list[FakeInputStream] = []
        self.outputs: list[FakeOutputStream] = []

    def InputStream(self, **kwargs) -> FakeInputStream:
        if self.fail_input:
            raise RuntimeError("no input device")
        stream = FakeInputStream(**kwargs)
        self.inputs.append(stream)
        return stream

    def OutputStream(self, **kwargs) -> FakeOutputStream:
        if self.fail_output:
            raise RuntimeError("no output device")
        stream = FakeOutputStream(self, **kwargs)
        self.outputs.append(stream)
        return stream


class FakeDeepgramSocket:
    def __init__(self):
        self.sent: list = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data) -> None:
        self.sent.append(data)
        if isinstance(data, str) and json.loads(data).get("type") == "CloseStream":
            self._incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, message: dict) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def hang_up(self) -> None:
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Stands in for ``websockets.connect``; ``gate`` holds the handshake open."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeDeepgramSocket] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def __call__(self, url, additional_headers=None):
        self.calls.append((url, additional_headers))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        ws = FakeDeepgramSocket()
        self.sockets.append(ws)
        return ws


@pytest.fixture()
def fake_sounddevice(monkeypatch):
    device = FakeSoundDevice()
    monkeypatch.setitem(sys.modules, "sounddevice", device)
    return device


@pytest.fixture()
def connector(monkeypatch):
    fake = FakeConnector()
    monkeypatch.setattr(websockets, "connect", fake)
    return fake

"""
deepgram.py — Voice Router · Streaming Recognizer
==================================================
Microphone → Deepgram live transcription → recognition events.

The mic InputStream runs on the sounddevice audio thread and hands int16
frames to the asyncio loop through ``call_soon_threadsafe``.  A sender task
forwards them over the websocket; a receiver task turns every non-empty
Deepgram ``Results`` message into a browser-style recognition event:

    results      = finalized segments so far + the current interim segment
    resultIndex  = first slot that changed (the interim slot, or the slot
                   that was just finalized)

Empty results (silence keep-alives) are dropped so they cannot hold the
silence timer open.  ``stop()`` closes the mic and asks Deepgram to flush
with ``CloseStream``; ``on_end`` fires when the socket has closed.  A
``stop()`` that lands while ``start()`` is still connecting abandons the
start: the socket is closed, the mic is never opened and ``on_end`` fires.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import websockets

from voice_router.config import CaptureConfig
from voice_router.errors import CaptureError

log = logging.getLogger("voice_router.deepgram")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


def build_listen_url(config: CaptureConfig) -> str:
    params = {
        "model": config.deepgram_model,
        "language": config.locale,
        "interim_results": str(config.interim_results).lower(),
        "punctuate": "true",
        "encoding": "linear16",
        "sample_rate": config.sample_rate,
        "channels": 1,
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class ResultsTracker:
    """Maps Deepgram's final/interim stream onto indexed result slots."""

    def __init__(self) -> None:
        self.finals: list[str] = []
        self.interim: str = ""

    def feed(self, message: dict) -> Optional[dict]:
        if message.get("type") != "Results":
            return None
        try:
            transcript = message["channel"]["alternatives"][0]["transcript"].strip()
        except (KeyError, IndexError, TypeError, AttributeError):
            log.debug("event=deepgram_message_malformed")
            return None

        if message.get("is_final"):
            self.interim = ""
            if not transcript:
                return None
            self.finals.append(transcript)
            result_index = len(self.finals) - 1
        else:
            if not transcript or transcript == self.interim:
                return None
            self.interim = transcript
            result_index = len(self.finals)

        segments = self.finals + ([self.interim] if self.interim else [])
        return {
            "resultIndex": result_index,
            "results": [
                {"alternatives": [{"transcript": seg if i == 0 else f" {seg}"}]}
                for i, seg in enumerate(segments)
            ],
        }


@dataclass
class _Stream:
    """Resources of one start() … on_end cycle."""
    ws: Any
    mic: Any
    frames: asyncio.Queue
    tasks: list[asyncio.Task] = field(default_factory=list)
    closing: bool = False

    def close_mic(self) -> None:
        if self.mic is not None:
            try:
                self.mic.stop()
                self.mic.close()
            except Exception as exc:
                log.warning("event=mic_close_error error=%s", exc)
            self.mic = None
        if not self.closing:
            self.closing = True
            self.frames.put_nowait(None)


class DeepgramRecognizer:
    def __init__(self, api_key: str, config: Optional[CaptureConfig] = None, *, device: Optional[int | str] = None):
        self._api_key = api_key
        self.config = config or CaptureConfig()
        self._device = device
        self._stream: Optional[_Stream] = None
        # Bumped by every start() and stop(); a start that resumes from the
        # connect await under a different value was stopped mid-connect.
        self._run: int = 0

    async def start(self, on_event: Callable[[Any], None], on_end: Callable[[], None]) -> None:
        import sounddevice as sd

        self._run += 1
        run = self._run
        loop = asyncio.get_running_loop()
        url = build_listen_url(self.config)
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            ws = await websockets.connect(url, additional_headers=headers)
        except (OSError, websockets.WebSocketException) as exc:
            raise CaptureError(f"deepgram connect failed: {exc}") from exc

        if run != self._run:
            log.info("event=deepgram_start_abandoned reason=stopped_while_connecting")
            await ws.close()
            on_end()
            return

        frames: asyncio.Queue = asyncio.Queue()

        def _mic_callback(indata, _frames, _time_info, status):
            if status:
                log.warning("event=mic_status status=%s", status)
            if not loop.is_closed():
                loop.call_soon_threadsafe(frames.put_nowait, bytes(indata))

        try:
            mic = sd.InputStream(
                samplerate=self.config.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.config.blocksize,
                device=self._device,
                callback=_mic_callback,
            )
            mic.start()
        except Exception as exc:
            await ws.close()
            raise CaptureError(f"microphone unavailable: {exc}") from exc

        stream = _Stream(ws=ws, mic=mic, frames=frames)
        stream.tasks = [
            asyncio.create_task(self._sender(stream), name="deepgram_sender"),
            asyncio.create_task(self._receiver(stream, on_event, on_end), name="deepgram_receiver"),
        ]
        self._stream = stream
        log.info("event=deepgram_connected model=%s language=%s", self.config.deepgram_model, self.config.locale)

    def stop(self) -> None:
        self._run += 1
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close_mic()

    async def _sender(self, stream: _Stream) -> None:
        try:
            while True:
                chunk = await stream.frames.get()
                if chunk is None:
                    await stream.ws.send(json.dumps({"type": "CloseStream"}))
                    log.debug("event=deepgram_close_stream_sent")
                    return
                await stream.ws.send(chunk)
        except websockets.ConnectionClosed as exc:
            log.warning("event=deepgram_send_closed error=%s", exc)

    async def _receiver(self, stream: _Stream, on_event: Callable[[Any], None], on_end: Callable[[], None]) -> None:
        tracker = ResultsTracker()
        try:
            async for raw in stream.ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    log.debug("event=deepgram_non_json")
                    continue
                event = tracker.feed(message)
                if event is not None:
                    on_event(event)
        except websockets.ConnectionClosed as exc:
            log.warning("event=deepgram_connection_closed error=%s", exc)
        finally:
            stream.close_mic()
            if self._stream is stream:
                self._stream = None
            for task in stream.tasks:
                if task is not asyncio.current_task() and not task.done():
                    task.cancel()
            log.info("event=deepgram_stream_ended")
            on_end()

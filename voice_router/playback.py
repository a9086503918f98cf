"""
playback.py — Voice Router · Reply Playback
============================================
``PlaybackController.play()`` turns a callback-style player into an
awaitable that resolves once, when the reply has finished playing, and
raises ``PlaybackError`` when the player reports a failure or stays silent
past ``max_duration_sec``.  A stalled player therefore can never leave the
coordinator stuck in PLAYING.

``SoundDevicePlayer`` is the real player: the reply bytes are decoded with
soundfile and fed to a sounddevice OutputStream from its audio thread.
Completion is signalled from the stream's ``finished_callback`` and handed
back to the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from typing import Callable, Optional, Protocol

import numpy as np

from voice_router.config import PlaybackConfig
from voice_router.errors import PlaybackError

log = logging.getLogger("voice_router.playback")


class Player(Protocol):
    """Audio playback collaborator.

    Exactly one of ``on_done`` / ``on_error`` is called per ``start``.
    """

    def start(
        self,
        audio: bytes,
        mime_type: str,
        on_done: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None: ...

    def stop(self) -> None: ...


class PlaybackController:
    def __init__(self, player: Player, config: Optional[PlaybackConfig] = None):
        self.config = config or PlaybackConfig()
        self._player = player
        self._pending: Optional[asyncio.Future] = None

    @property
    def active(self) -> bool:
        return self._pending is not None

    async def play(self, audio: bytes, mime_type: str) -> None:
        if self._pending is not None:
            raise PlaybackError("playback already in progress")

        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()
        self._pending = done

        def _on_done() -> None:
            if not done.done():
                done.set_result(None)

        def _on_error(exc: Exception) -> None:
            if not done.done():
                done.set_exception(exc)

        log.info("event=playback_start bytes=%d mime=%s", len(audio), mime_type)
        try:
            self._player.start(audio, mime_type, _on_done, _on_error)
            await asyncio.wait_for(done, timeout=self.config.max_duration_sec)
        except asyncio.TimeoutError:
            log.error("event=playback_timeout max_sec=%.1f", self.config.max_duration_sec)
            raise PlaybackError(f"no completion after {self.config.max_duration_sec:.0f}s") from None
        except PlaybackError:
            raise
        except Exception as exc:
            log.error("event=playback_failed error=%s", exc)
            raise PlaybackError(str(exc)) from exc
        finally:
            self._pending = None
            self._player.stop()
        log.info("event=playback_done")

    def stop(self) -> None:
        """Abort the in-flight playback; ``play()`` raises PlaybackError."""
        pending = self._pending
        if pending is None:
            return
        self._player.stop()
        if not pending.done():
            pending.set_exception(PlaybackError("playback stopped"))


# ---------------------------------------------------------------------------
# sounddevice player
# ---------------------------------------------------------------------------

class SoundDevicePlayer:
    """Plays a complete encoded reply through the default output device."""

    BLOCKSIZE = 1024

    def __init__(self, device: Optional[int | str] = None):
        self._device = device
        self._lock = threading.Lock()
        self._stream = None
        self._samples: Optional[np.ndarray] = None
        self._pos = 0

    def start(
        self,
        audio: bytes,
        mime_type: str,
        on_done: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        import sounddevice as sd
        import soundfile as sf

        self.stop()
        loop = asyncio.get_running_loop()
        try:
            samples, samplerate = sf.read(io.BytesIO(audio), dtype="float32", always_2d=True)
        except Exception as exc:
            log.error("event=playback_decode_failed mime=%s error=%s", mime_type, exc)
            loop.call_soon(on_error, PlaybackError(f"cannot decode {mime_type}: {exc}"))
            return

        # Decoded mp3 can overshoot full scale slightly
        samples = np.clip(samples, -1.0, 1.0)
        with self._lock:
            self._samples = samples
            self._pos = 0

        def _finished() -> None:
            # PortAudio thread; the loop may be gone after shutdown
            if not loop.is_closed():
                loop.call_soon_threadsafe(on_done)

        try:
            self._stream = sd.OutputStream(
                samplerate=samplerate,
                channels=samples.shape[1],
                dtype="float32",
                device=self._device,
                blocksize=self.BLOCKSIZE,
                callback=self._callback,
                finished_callback=_finished,
            )
            self._stream.start()
        except Exception as exc:
            log.error("event=playback_device_failed error=%s", exc)
            self._stream = None
            loop.call_soon(on_error, PlaybackError(f"output device failed: {exc}"))
            return
        log.debug("event=playback_stream_open samplerate=%d frames=%d", samplerate, len(samples))

    def stop(self) -> None:
        with self._lock:
            self._samples = None
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as exc:
                log.warning("event=playback_stream_close_error error=%s", exc)
            self._stream = None

    # -- sounddevice audio-thread callback --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        import sounddevice as sd

        if status:
            log.warning("event=playback_status status=%s", status)
        with self._lock:
            samples = self._samples
            if samples is None:
                outdata.fill(0)
                raise sd.CallbackStop
            chunk = samples[self._pos:self._pos + frames]
            self._pos += len(chunk)
        outdata[:len(chunk)] = chunk
        if len(chunk) < frames:
            outdata[len(chunk):] = np.zeros((frames - len(chunk), outdata.shape[1]), dtype=outdata.dtype)
            raise sd.CallbackStop

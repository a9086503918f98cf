"""
client.py — Voice Router · Hands-free Voice Client
===================================================
Wires the real collaborators to the dispatch coordinator and runs the loop
until the user quits.

Usage
-----
    voice-router [--config voice_router.json] [--backend-url URL]

Press Enter to toggle listening on/off, type ``q`` + Enter to quit.
Start an utterance with "gpt4", "gpt3" or "llama" to pick the model.

Pipeline
--------
sounddevice mic → DeepgramRecognizer → CaptureSession (transcript + silence)
    → DispatchCoordinator → BackendClient (POST /api/chat)
    → PlaybackController (SoundDevicePlayer) → CaptureSession.start()
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from voice_router.backend import BackendClient
from voice_router.capture import CaptureSession
from voice_router.config import VoiceRouterConfig, setup_logging
from voice_router.coordinator import DispatchCoordinator, SessionState
from voice_router.deepgram import DeepgramRecognizer
from voice_router.keywords import ModelKeywordDetector
from voice_router.playback import PlaybackController, SoundDevicePlayer

load_dotenv()

log = logging.getLogger("voice_router.client")


# ---------------------------------------------------------------------------
# Event loop stall monitor
# ---------------------------------------------------------------------------

async def _stall_monitor(coordinator: DispatchCoordinator, tick_sec: float = 0.1, warn_ms: float = 150.0) -> None:
    """Warn when the loop falls behind; a stall in LISTENING delays the silence timer."""
    loop = asyncio.get_running_loop()
    expected = loop.time() + tick_sec
    while True:
        await asyncio.sleep(tick_sec)
        late_ms = (loop.time() - expected) * 1000.0
        if late_ms > warn_ms:
            log.warning("event=event_loop_stall stall_ms=%.1f state=%s", late_ms, coordinator.state.name)
        expected = loop.time() + tick_sec


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def build_coordinator(config: VoiceRouterConfig, backend: BackendClient) -> DispatchCoordinator:
    api_key = os.environ.get("DEEPGRAM_API_KEY")
    if not api_key:
        raise SystemExit("DEEPGRAM_API_KEY is not set")

    capture = CaptureSession(DeepgramRecognizer(api_key, config.capture), config.capture)
    playback = PlaybackController(SoundDevicePlayer(), config.playback)
    detector = ModelKeywordDetector(
        window_words=config.detector.window_words,
        default_model=config.detector.default_model,
    )

    def _show_state(state: SessionState) -> None:
        print(f"[{state.value}]", flush=True)

    def _show_transcript(text: str) -> None:
        print(f"  … {text}", flush=True)

    def _show_error(exc: Exception) -> None:
        print(f"  ! {exc} (press Enter to listen again)", flush=True)

    return DispatchCoordinator(
        capture,
        playback,
        backend,
        detector,
        retries=config.backend.retries,
        on_state_change=_show_state,
        on_transcript=_show_transcript,
        on_error=_show_error,
    )


async def _read_commands(coordinator: DispatchCoordinator) -> None:
    """Enter toggles listening, 'q' quits."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line or line.strip().lower() in ("q", "quit", "exit"):
            log.info("event=quit_requested")
            return
        await coordinator.toggle()
        log.debug("event=toggle status=%s", coordinator.status())


async def run(config: VoiceRouterConfig) -> None:
    log.info("event=client_start backend=%s quiet_ms=%d", config.backend.url, config.capture.quiet_period_ms)
    backend = BackendClient(config.backend)
    coordinator = build_coordinator(config, backend)

    monitor = asyncio.create_task(_stall_monitor(coordinator), name="stall_monitor")
    print("Press Enter to start/stop listening, 'q' to quit.", flush=True)
    try:
        await _read_commands(coordinator)
    finally:
        await coordinator.shutdown()
        await backend.aclose()
        monitor.cancel()
        try:
            await monitor
        except asyncio.CancelledError:
            pass
        log.info("event=client_shutdown")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Hands-free voice client for the Voice Router")
    parser.add_argument("--config", default=os.getenv("VOICE_ROUTER_CONFIG", "voice_router.json"),
                        help="Path to JSON config (defaults are used if missing)")
    parser.add_argument("--backend-url", help="Override backend.url")
    parser.add_argument("--quiet-ms", type=int, help="Override capture.quiet_period_ms")
    parser.add_argument("--locale", help="Override capture.locale")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    setup_logging()

    config = VoiceRouterConfig.load(args.config)
    patch: dict = {}
    if args.backend_url:
        patch.setdefault("backend", {})["url"] = args.backend_url
    if args.quiet_ms is not None:
        patch.setdefault("capture", {})["quiet_period_ms"] = args.quiet_ms
    if args.locale:
        patch.setdefault("capture", {})["locale"] = args.locale
    if patch:
        config = config.merge_patch(patch)

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        log.info("event=shutdown reason=keyboard_interrupt")


if __name__ == "__main__":
    main()

"""Tests for the Deepgram recognizer, with the socket and microphone faked."""

from __future__ import annotations

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import numpy as np
import pytest

from voice_router.capture import CaptureSession
from voice_router.config import CaptureConfig
from voice_router.deepgram import DeepgramRecognizer, ResultsTracker, build_listen_url
from voice_router.errors import CaptureError
from voice_router.transcript import TranscriptAccumulator

from conftest import wait_until


def results(transcript: str, is_final: bool = False) -> dict:
    return {
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.9}]},
    }


class TestBuildListenUrl:
    def test_query_parameters(self):
        url = build_listen_url(CaptureConfig(locale="de-DE", sample_rate=16000))
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.scheme == "wss"
        assert parsed.netloc == "api.deepgram.com"
        assert query["language"] == ["de-DE"]
        assert query["model"] == ["nova-3"]
        assert query["interim_results"] == ["true"]
        assert query["encoding"] == ["linear16"]
        assert query["sample_rate"] == ["16000"]


class TestResultsTracker:
    def test_interim_then_final(self):
        tracker = ResultsTracker()
        first = tracker.feed(results("gpt3 what"))
        assert first == {"resultIndex": 0, "results": [{"alternatives": [{"transcript": "gpt3 what"}]}]}

        second = tracker.feed(results("gpt3 what is", is_final=True))
        assert second["resultIndex"] == 0
        assert tracker.finals == ["gpt3 what is"]

        third = tracker.feed(results("the capital"))
        assert third["resultIndex"] == 1
        assert [r["alternatives"][0]["transcript"] for r in third["results"]] == ["gpt3 what is", " the capital"]

    def test_events_accumulate_into_transcript(self):
        tracker = ResultsTracker()
        acc = TranscriptAccumulator()
        for message in (
            results("gpt3"),
            results("gpt3 what is", is_final=True),
            results("the capital"),
            results("the capital of France", is_final=True),
        ):
            event = tracker.feed(message)
            if event is not None:
                acc.on_recognition_event(event)
        assert acc.text == "gpt3 what is the capital of France"

    def test_silence_and_repeats_are_dropped(self):
        tracker = ResultsTracker()
        assert tracker.feed(results("")) is None
        assert tracker.feed(results("", is_final=True)) is None
        assert tracker.feed(results("hello")) is not None
        assert tracker.feed(results("hello")) is None

    def test_non_results_messages_are_ignored(self):
        tracker = ResultsTracker()
        assert tracker.feed({"type": "Metadata", "request_id": "abc"}) is None
        assert tracker.feed({"type": "UtteranceEnd"}) is None

    def test_malformed_results_are_ignored(self):
        tracker = ResultsTracker()
        assert tracker.feed({"type": "Results", "channel": {"alternatives": []}}) is None
        assert tracker.feed({"type": "Results"}) is None


class TestDeepgramRecognizer:
    @pytest.fixture()
    def recognizer(self, fake_sounddevice, connector):
        return DeepgramRecognizer("dg-key", CaptureConfig(sample_rate=16000, blocksize=320))

    def test_streams_mic_and_flushes_on_stop(self, recognizer, fake_sounddevice, connector):
        async def scenario():
            events, ends = [], []
            await recognizer.start(events.append, lambda: ends.append(True))
            mic = fake_sounddevice.inputs[0]
            ws = connector.sockets[0]
            assert mic.running

            mic.feed(np.zeros((4, 1), dtype=np.int16))
            ws.push(results("gpt3 hello"))
            await wait_until(lambda: ws.sent and events)

            recognizer.stop()
            await wait_until(lambda: ends)
            await asyncio.sleep(0.01)
            return events, ends, ws, mic

        events, ends, ws, mic = asyncio.run(scenario())
        assert connector.calls[0][1] == {"Authorization": "Token dg-key"}
        assert fake_sounddevice.inputs[0].kwargs["samplerate"] == 16000
        assert fake_sounddevice.inputs[0].kwargs["dtype"] == "int16"
        assert ws.sent[0] == bytes(8)
        assert json.loads(ws.sent[-1]) == {"type": "CloseStream"}
        assert events[0]["results"][0]["alternatives"][0]["transcript"] == "gpt3 hello"
        assert ends == [True]
        assert mic.closed and not mic.running
        assert recognizer._stream is None

    def test_connect_failure_raises_capture_error(self, recognizer, fake_sounddevice, connector):
        connector.error = OSError("connection refused")

        async def scenario():
            with pytest.raises(CaptureError, match="connect failed"):
                await recognizer.start(lambda event: None, lambda: None)

        asyncio.run(scenario())
        assert fake_sounddevice.inputs == []

    def test_mic_failure_closes_socket(self, recognizer, fake_sounddevice, connector):
        fake_sounddevice.fail_input = True

        async def scenario():
            with pytest.raises(CaptureError, match="microphone unavailable"):
                await recognizer.start(lambda event: None, lambda: None)

        asyncio.run(scenario())
        assert connector.sockets[0].closed

    def test_server_hang_up_ends_stream(self, recognizer, fake_sounddevice, connector):
        async def scenario():
            ends = []
            await recognizer.start(lambda event: None, lambda: ends.append(True))
            connector.sockets[0].hang_up()
            await wait_until(lambda: ends)
            await asyncio.sleep(0.01)
            return ends

        assert asyncio.run(scenario()) == [True]
        assert fake_sounddevice.inputs[0].closed
        assert recognizer._stream is None

    def test_stop_while_connecting_never_opens_mic(self, recognizer, fake_sounddevice, connector):
        async def scenario():
            ends = []
            connector.gate = asyncio.Event()
            starting = asyncio.create_task(recognizer.start(lambda event: None, lambda: ends.append(True)))
            await wait_until(lambda: connector.calls)
            recognizer.stop()
            connector.gate.set()
            await starting
            return ends

        assert asyncio.run(scenario()) == [True]
        assert fake_sounddevice.inputs == []
        assert connector.sockets[0].closed
        assert recognizer._stream is None

    def test_capture_stop_while_connecting_leaves_nothing_running(self, recognizer, fake_sounddevice, connector):
        async def scenario():
            capture = CaptureSession(recognizer, CaptureConfig(quiet_period_ms=50))
            connector.gate = asyncio.Event()
            starting = asyncio.create_task(capture.start())
            await wait_until(lambda: connector.calls)
            capture.stop()
            connector.gate.set()
            await starting
            quiesced = await capture.wait_stopped(timeout=1.0)
            abandoned = (capture.active, [m.running for m in fake_sounddevice.inputs], connector.sockets[0].closed)

            # The next start gets a fresh socket and mic
            connector.gate = None
            await capture.start()
            restarted = (capture.active, len(fake_sounddevice.inputs), fake_sounddevice.inputs[0].running)
            capture.stop()
            return quiesced, abandoned, restarted, await capture.wait_stopped(timeout=1.0)

        quiesced, abandoned, restarted, stopped_again = asyncio.run(scenario())
        assert quiesced is True
        assert abandoned == (False, [], True)
        assert restarted == (True, 1, True)
        assert stopped_again is True
        assert fake_sounddevice.inputs[0].closed
        assert len(connector.sockets) == 2

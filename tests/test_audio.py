from __future__ import annotations

import base64
import json
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from helpers import (
    FakeAudioInput,
    FakeAudioOutput,
    FakeSession,
    Recorder,
    SyncExecutor,
    wait_until,
)
from iris_live.live.audio import AudioInputPipeline, PlaybackQueue
from iris_live.live.devices import DeviceError
from iris_live.live.media import AudioChunk
from iris_live.live.protocol import MessageType


def media_chunks(payload: str) -> list[dict]:
    return json.loads(payload)["realtime_input"]["media_chunks"]


def build_pipeline(session: FakeSession, device: FakeAudioInput | None = None, recorder: Recorder | None = None):
    device = device or FakeAudioInput()
    opened: list[FakeAudioInput] = []

    def factory() -> FakeAudioInput:
        opened.append(device)
        return device

    pipeline = AudioInputPipeline(
        session,
        device_factory=factory,
        send_executor=SyncExecutor(),
        callback=recorder,
    )
    return pipeline, opened


def test_audio_chunk_is_read_only_little_endian() -> None:
    chunk = AudioChunk(np.array([0x0102, -2], dtype=np.int16))

    assert chunk.to_pcm_bytes() == b"\x02\x01\xfe\xff"
    assert len(chunk) == 2
    with pytest.raises(ValueError):
        chunk.samples[0] = 5
    assert AudioChunk.from_pcm_bytes(chunk.to_pcm_bytes()).samples.tolist() == [0x0102, -2]


def test_one_block_of_2400_samples_becomes_one_media_chunk() -> None:
    session = FakeSession()
    pipeline, _ = build_pipeline(session)
    samples = (np.arange(2400) - 1200).astype(np.int16)

    chunk = pipeline.accept_samples(samples)

    assert chunk is not None and len(chunk) == 2400
    assert chunk.duration_ms == pytest.approx(100.0)
    assert len(session.sent) == 1
    entries = media_chunks(session.sent[0])
    assert len(entries) == 1
    assert entries[0]["mime_type"] == "audio/pcm"
    assert base64.b64decode(entries[0]["data"]) == samples.astype("<i2").tobytes()


def test_capture_loop_sends_blocks_in_capture_order() -> None:
    session = FakeSession()
    blocks = [np.full(480, value, dtype=np.int16).tobytes() for value in range(1, 6)]
    device = FakeAudioInput(blocks)
    pipeline, _ = build_pipeline(session, device)

    assert pipeline.start() is True
    assert wait_until(lambda: len(session.sent) == 5)
    assert pipeline.stop() is True

    firsts = [
        int(np.frombuffer(base64.b64decode(media_chunks(payload)[0]["data"]), dtype="<i2")[0])
        for payload in session.sent
    ]
    assert firsts == [1, 2, 3, 4, 5]
    assert device.closed is True
    assert pipeline.is_recording is False


def test_start_is_idempotent() -> None:
    pipeline, opened = build_pipeline(FakeSession())

    assert pipeline.start() is True
    assert pipeline.start() is False
    assert len(opened) == 1
    pipeline.stop()


def test_stop_without_start_is_harmless() -> None:
    pipeline, _ = build_pipeline(FakeSession())

    assert pipeline.stop() is False


def test_device_failure_reports_error_and_does_not_start() -> None:
    recorder = Recorder()

    def broken_factory():
        raise DeviceError("no microphone")

    pipeline = AudioInputPipeline(
        FakeSession(),
        device_factory=broken_factory,
        send_executor=SyncExecutor(),
        callback=recorder,
    )

    assert pipeline.start() is False
    assert pipeline.is_recording is False
    assert recorder.of_type(MessageType.ERROR) == ["Audio input unavailable: no microphone"]


def test_read_failure_stops_capture_and_releases_device() -> None:
    recorder = Recorder()

    class FailingInput(FakeAudioInput):
        def read(self) -> bytes:
            raise OSError("device unplugged")

    device = FailingInput()
    pipeline, _ = build_pipeline(FakeSession(), device, recorder)

    pipeline.start()
    assert wait_until(lambda: device.closed)

    assert pipeline.is_recording is False
    assert recorder.of_type(MessageType.ERROR) == ["Audio capture failed: device unplugged"]


def test_audio_is_not_encoded_while_disconnected() -> None:
    session = FakeSession(connected=False)
    pipeline, _ = build_pipeline(session)

    pipeline.accept_samples(np.ones(2400, dtype=np.int16))

    assert session.sent == []


def test_chunks_are_dropped_after_send_executor_shutdown() -> None:
    session = FakeSession()
    executor = SyncExecutor()
    pipeline = AudioInputPipeline(session, device_factory=FakeAudioInput, send_executor=executor)
    executor.shutdown()

    chunk = pipeline.accept_samples(np.ones(10, dtype=np.int16))

    assert chunk is not None
    assert session.sent == []


def test_playback_is_fifo_with_a_single_drain() -> None:
    device = FakeAudioOutput(delay=0.001)
    with ThreadPoolExecutor(max_workers=4) as executor:
        playback = PlaybackQueue(device_factory=lambda: device, executor=executor)
        chunks = [bytes([index % 256, index // 256]) for index in range(200)]
        for chunk in chunks:
            playback.enqueue(chunk)

        assert wait_until(lambda: len(device.written) == len(chunks), timeout=5.0)
        assert wait_until(lambda: not playback.is_draining)

    assert device.written == chunks
    assert device.max_concurrent_writes == 1


def test_playback_with_concurrent_producers_never_overlaps() -> None:
    device = FakeAudioOutput()
    with ThreadPoolExecutor(max_workers=4) as executor:
        playback = PlaybackQueue(device_factory=lambda: device, executor=executor)

        def produce(producer: int) -> None:
            for index in range(100):
                playback.enqueue(bytes([producer, index]))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert wait_until(lambda: len(device.written) == 400, timeout=5.0)

    assert device.max_concurrent_writes == 1
    for producer in range(4):
        assert [chunk[1] for chunk in device.written if chunk[0] == producer] == list(range(100))


def test_playback_restarts_drain_after_going_idle() -> None:
    device = FakeAudioOutput()
    with ThreadPoolExecutor(max_workers=2) as executor:
        playback = PlaybackQueue(device_factory=lambda: device, executor=executor)

        playback.enqueue(b"\x01\x00")
        assert wait_until(lambda: not playback.is_draining and len(device.written) == 1)
        playback.enqueue(b"\x02\x00")
        assert wait_until(lambda: len(device.written) == 2)

    assert device.written == [b"\x01\x00", b"\x02\x00"]
    assert playback.is_draining is False


def test_playback_opens_device_lazily_and_releases_it() -> None:
    opened: list[FakeAudioOutput] = []

    def factory() -> FakeAudioOutput:
        device = FakeAudioOutput()
        opened.append(device)
        return device

    playback = PlaybackQueue(device_factory=factory, executor=SyncExecutor())
    assert opened == []

    playback.enqueue(b"\x00\x01")
    playback.enqueue(b"\x00\x02")

    assert len(opened) == 1
    assert opened[0].written == [b"\x00\x01", b"\x00\x02"]
    playback.release()
    assert opened[0].closed is True
    assert playback.has_device is False

    playback.enqueue(b"\x00\x03")
    assert len(playback) == 0
    assert opened[0].written == [b"\x00\x01", b"\x00\x02"]


def test_bounded_playback_drops_oldest_chunks() -> None:
    executor = SyncExecutor()
    executor.shutdown()
    playback = PlaybackQueue(device_factory=FakeAudioOutput, executor=executor, maxsize=2)

    for value in range(4):
        playback.enqueue(bytes([value, 0]))

    assert len(playback) == 2
    assert playback.clear() == 2


def test_output_device_failure_is_reported_once_and_not_retried() -> None:
    recorder = Recorder()
    opens = []

    def broken_factory():
        opens.append(1)
        raise DeviceError("no speaker")

    playback = PlaybackQueue(device_factory=broken_factory, executor=SyncExecutor(), callback=recorder)

    for value in range(5):
        playback.enqueue(bytes([value, 0]))

    assert len(opens) == 1
    assert recorder.of_type(MessageType.ERROR) == ["Audio output unavailable: no speaker"]
    assert playback.device_unavailable is True
    assert playback.is_draining is False
    assert len(playback) == 0


def test_output_device_failure_drops_chunks_queued_behind_it() -> None:
    recorder = Recorder()
    opening = threading.Event()
    proceed = threading.Event()
    opens = []

    def slow_broken_factory():
        opens.append(1)
        opening.set()
        proceed.wait(2.0)
        raise DeviceError("no speaker")

    with ThreadPoolExecutor(max_workers=2) as executor:
        playback = PlaybackQueue(device_factory=slow_broken_factory, executor=executor, callback=recorder)
        playback.enqueue(b"\x01\x00")
        assert opening.wait(2.0)
        playback.enqueue(b"\x02\x00")
        playback.enqueue(b"\x03\x00")
        proceed.set()
        assert wait_until(lambda: not playback.is_draining)

    assert len(opens) == 1
    assert len(playback) == 0
    assert len(recorder.of_type(MessageType.ERROR)) == 1


def test_restart_waits_for_previous_capture_thread() -> None:
    release = threading.Event()
    devices: list[FakeAudioInput] = []

    class StuckInput(FakeAudioInput):
        def read(self) -> bytes:
            release.wait(2.0)
            return b""

    def factory() -> FakeAudioInput:
        device = StuckInput()
        devices.append(device)
        return device

    pipeline = AudioInputPipeline(FakeSession(), device_factory=factory, send_executor=SyncExecutor())

    assert pipeline.start() is True
    pipeline.stop(timeout=0.05)

    assert pipeline.start() is False
    assert len(devices) == 1

    release.set()
    assert wait_until(lambda: devices[0].closed)
    assert wait_until(lambda: pipeline.start())
    assert len(devices) == 2
    assert pipeline.is_recording is True
    pipeline.stop()

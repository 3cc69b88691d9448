"""Tests for the fixed-length audio SegmentRecorder."""

import asyncio
import io

import numpy as np
import pytest
import soundfile as sf

from conftest import FakeAudioTrack, make_audio_frame
from meeting_pipeline.errors import RecorderStateError, SourceUnavailableError
from meeting_pipeline.streaming import SegmentRecorder, encode_wav, prepare_audio


def source_of(*tracks):
    """Source factory handing out one track per start()."""
    pending = list(tracks)

    async def _open():
        return pending.pop(0)

    return _open


def decoded_values(segment):
    data, rate = sf.read(io.BytesIO(segment.payload), dtype="int16")
    assert rate == 16000
    return data, set(np.unique(np.round(data / 1000.0)).astype(int).tolist())


class TestPrepareAudio:
    def test_int16_mono_is_scaled_to_float(self):
        samples = prepare_audio(make_audio_frame(16384, samples=320))
        assert samples.dtype == np.float32
        assert samples.shape == (320,)
        assert samples.max() == pytest.approx(0.5, abs=1e-3)

    def test_resamples_to_target_rate(self):
        samples = prepare_audio(make_audio_frame(1000, samples=960, rate=48000))
        assert samples.shape[0] == 320

    def test_encode_wav_roundtrip_length(self):
        data, rate = sf.read(io.BytesIO(encode_wav(np.zeros(1600, dtype=np.float32))))
        assert rate == 16000
        assert len(data) == 1600


class TestSegmentRecorder:
    @pytest.mark.asyncio
    async def test_sixteen_seconds_makes_four_segments(self, timers):
        """5 s segments over 16 s: three full boundaries plus the partial one on stop."""
        track = FakeAudioTrack()
        segments = []

        async def on_segment(segment):
            segments.append(segment)

        recorder = SegmentRecorder(source_of(track), "m1", timer_factory=timers)
        await recorder.start(on_segment, segment_duration_ms=5000)
        boundary = timers.by_name("segment-recorder")
        assert boundary.interval_ms == 5000

        for second in range(1, 17):
            # one frame per second of audio, tagged with its second
            await track.push(make_audio_frame(second * 1000, samples=16000))
            if second % 5 == 0:
                await boundary.fire()
        await recorder.stop()

        assert len(segments) == 4
        segments.sort(key=lambda s: s.index)
        assert [s.index for s in segments] == [1, 2, 3, 4]
        assert all(s.session_id == "m1" for s in segments)

        seen = set()
        expected = [set(range(1, 6)), set(range(6, 11)), set(range(11, 16)), {16}]
        for segment, values in zip(segments, expected):
            data, tags = decoded_values(segment)
            assert tags == values
            assert len(data) == 16000 * len(values)
            assert not (tags & seen)
            seen |= tags

    @pytest.mark.asyncio
    async def test_boundary_without_audio_emits_nothing(self, timers):
        track = FakeAudioTrack()
        segments = []

        async def on_segment(segment):
            segments.append(segment)

        recorder = SegmentRecorder(source_of(track), "m1", timer_factory=timers)
        await recorder.start(on_segment)
        await timers.by_name("segment-recorder").fire()
        await recorder.stop()
        assert segments == []

    @pytest.mark.asyncio
    async def test_stop_releases_track_and_timer(self, timers):
        track = FakeAudioTrack()

        async def on_segment(segment):
            pass

        recorder = SegmentRecorder(source_of(track), "m1", timer_factory=timers)
        await recorder.start(on_segment)
        await recorder.stop()

        assert not recorder.recording
        assert track.readyState == "ended"
        assert timers.by_name("segment-recorder").cancelled

    @pytest.mark.asyncio
    async def test_no_callback_after_stop_returns(self, timers):
        track = FakeAudioTrack()
        segments = []

        async def on_segment(segment):
            segments.append(segment)

        recorder = SegmentRecorder(source_of(track), "m1", timer_factory=timers)
        await recorder.start(on_segment)
        await track.push(make_audio_frame(1000))
        await recorder.stop()
        assert len(segments) == 1

        # a late tick of the old timer does nothing
        await timers.by_name("segment-recorder").fire()
        assert len(segments) == 1

    @pytest.mark.asyncio
    async def test_restart_cycles_continue_numbering(self, timers):
        first, second = FakeAudioTrack(), FakeAudioTrack()
        segments = []

        async def on_segment(segment):
            segments.append(segment)

        recorder = SegmentRecorder(source_of(first, second), "m1", timer_factory=timers)
        await recorder.start(on_segment)
        await first.push(make_audio_frame(1000))
        await recorder.stop()

        await recorder.start(on_segment)
        await second.push(make_audio_frame(2000))
        await recorder.stop()

        assert [s.index for s in segments] == [1, 2]

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, timers):
        recorder = SegmentRecorder(source_of(FakeAudioTrack()), "m1", timer_factory=timers)

        async def on_segment(segment):
            pass

        await recorder.start(on_segment)
        with pytest.raises(RecorderStateError):
            await recorder.start(on_segment)
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_unavailable_source_leaves_recorder_idle(self, timers):
        async def broken():
            raise PermissionError("microphone permission denied")

        async def on_segment(segment):
            pass

        recorder = SegmentRecorder(broken, "m1", timer_factory=timers)
        with pytest.raises(SourceUnavailableError):
            await recorder.start(on_segment)
        assert not recorder.recording
        assert timers.timers == []

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, timers):
        recorder = SegmentRecorder(source_of(), "m1", timer_factory=timers)
        await recorder.stop()
        await recorder.stop()
        assert not recorder.recording

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_recording(self, timers):
        track = FakeAudioTrack()
        calls = []

        async def on_segment(segment):
            calls.append(segment.index)
            raise RuntimeError("upload exploded")

        recorder = SegmentRecorder(source_of(track), "m1", timer_factory=timers)
        await recorder.start(on_segment)
        await track.push(make_audio_frame(1000))
        await timers.by_name("segment-recorder").fire()
        await track.push(make_audio_frame(2000))
        await recorder.stop()
        assert sorted(calls) == [1, 2]

    @pytest.mark.asyncio
    async def test_overlapping_start_is_rejected(self, timers):
        release = asyncio.Event()
        track = FakeAudioTrack()

        async def slow_source():
            await release.wait()
            return track

        async def on_segment(segment):
            pass

        recorder = SegmentRecorder(slow_source, "m1", timer_factory=timers)
        first = asyncio.create_task(recorder.start(on_segment))
        await asyncio.sleep(0)
        with pytest.raises(RecorderStateError):
            await recorder.start(on_segment)

        release.set()
        await first
        assert recorder.recording
        assert len(timers.timers) == 1
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_start_can_be_retried_after_source_failure(self, timers):
        attempts = [PermissionError("microphone busy")]
        track = FakeAudioTrack()

        async def flaky_source():
            if attempts:
                raise attempts.pop()
            return track

        async def on_segment(segment):
            pass

        recorder = SegmentRecorder(flaky_source, "m1", timer_factory=timers)
        with pytest.raises(SourceUnavailableError):
            await recorder.start(on_segment)
        await recorder.start(on_segment)
        assert recorder.recording
        await recorder.stop()

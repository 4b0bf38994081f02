import copy

import numpy as np
import pytest

from gamecounter import capture
from gamecounter import config as config_module


def _pcm(*samples: int) -> bytes:
    return np.array(samples, dtype=np.int16).tobytes()


def test_default_profiles_are_monotonic():
    profiles = capture.quality_profiles(config_module._DEFAULTS)
    assert list(profiles) == ["low", "medium", "high"]
    assert profiles["low"].pixels <= profiles["medium"].pixels <= profiles["high"].pixels
    assert profiles["low"].interval_ms >= profiles["medium"].interval_ms >= profiles["high"].interval_ms
    assert profiles["medium"].interval_sec == pytest.approx(0.25)


def test_non_monotonic_profiles_are_rejected():
    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["streaming"]["quality_profiles"]["high"]["interval_ms"] = 1000
    with pytest.raises(ValueError):
        capture.quality_profiles(cfg)

    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["streaming"]["quality_profiles"]["low"]["width"] = 1920
    with pytest.raises(ValueError):
        capture.quality_profiles(cfg)


def test_pcm_chunk_decoding_and_peak():
    pcm = _pcm(0, 16384, -32768, 100)
    encoded = capture.encode_pcm_chunk(pcm)

    assert capture.decode_pcm_chunk(encoded) == pcm
    assert capture.decode_pcm_chunk("data:audio/pcm;base64," + encoded) == pcm
    assert capture.chunk_peak(pcm) == pytest.approx(1.0)
    assert capture.chunk_peak(_pcm(0, 16384)) == pytest.approx(0.5)
    assert capture.chunk_peak(b"") == 0.0
    assert capture.chunk_peak(b"\x01") == 0.0

    with pytest.raises(ValueError):
        capture.decode_pcm_chunk("not base64 !!")


def test_level_smoothing():
    level = capture.smooth_level(0.0, 1.0)
    assert level == pytest.approx(0.3)
    assert capture.smooth_level(level, 0.0) == pytest.approx(0.21)


def test_jpeg_quality_maps_to_ffmpeg_scale():
    assert capture._jpeg_qscale(1.0) == 2
    assert capture._jpeg_qscale(0.0) == 31
    assert capture._jpeg_qscale(5.0) == 2


def test_missing_tools_raise_permission_errors(tmp_path):
    with pytest.raises(capture.CapturePermissionError):
        capture.FfmpegFrameSource(str(tmp_path / "video0"), ffmpeg_path="gamecounter-no-such-ffmpeg").open()

    source = capture.ArecordAudioSource("default", arecord_path=str(tmp_path / "no-arecord"))
    with pytest.raises(capture.CapturePermissionError):
        source.open()
    source.close()
    assert source.read_chunk() == b""


def test_closed_frame_source_yields_nothing():
    source = capture.FfmpegFrameSource("/dev/video-missing")
    profile = capture.QualityProfile(width=320, height=240, jpeg_quality=0.3, interval_ms=500)
    assert source.read_frame(profile) is None

"""Worker-side capture: quality profiles, capture sources and PCM helpers."""

from __future__ import annotations

import base64
import binascii
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import numpy as np

from gamecounter.models import VIDEO_QUALITIES

log = logging.getLogger("gamecounter.capture")

LEVEL_DECAY = 0.7
AUDIO_SAMPLE_RATE = 16000


class CapturePermissionError(RuntimeError):
    """Camera or microphone could not be opened (denied, missing, busy)."""


@dataclass(slots=True, frozen=True)
class QualityProfile:
    width: int
    height: int
    jpeg_quality: float
    interval_ms: int

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @property
    def interval_sec(self) -> float:
        return self.interval_ms / 1000.0


def quality_profiles(cfg: Mapping[str, Any]) -> dict[str, QualityProfile]:
    raw = cfg.get("streaming", {}).get("quality_profiles", {})
    profiles = {
        name: QualityProfile(
            width=int(raw[name]["width"]),
            height=int(raw[name]["height"]),
            jpeg_quality=float(raw[name]["jpeg_quality"]),
            interval_ms=int(raw[name]["interval_ms"]),
        )
        for name in VIDEO_QUALITIES
    }
    for lower, higher in zip(VIDEO_QUALITIES, VIDEO_QUALITIES[1:]):
        if profiles[higher].pixels < profiles[lower].pixels:
            raise ValueError(f"{higher} frames must not be smaller than {lower} frames")
        if profiles[higher].interval_ms > profiles[lower].interval_ms:
            raise ValueError(f"{higher} cadence must not be slower than {lower} cadence")
    return profiles


class FrameSource(Protocol):
    def open(self) -> None: ...

    def read_frame(self, profile: QualityProfile) -> str | None: ...

    def close(self) -> None: ...


class AudioSource(Protocol):
    def open(self) -> None: ...

    def read_chunk(self) -> bytes: ...

    def close(self) -> None: ...


def _jpeg_qscale(jpeg_quality: float) -> int:
    # ffmpeg mjpeg -q:v runs 2 (best) .. 31 (worst)
    clamped = min(1.0, max(0.0, jpeg_quality))
    return int(round(31 - clamped * 29))


class FfmpegFrameSource:
    """Grabs single JPEG frames from a V4L2 camera through ffmpeg."""

    def __init__(self, device: str = "/dev/video0", *, ffmpeg_path: str = "ffmpeg", timeout: float = 5.0):
        self._device = device
        self._ffmpeg = ffmpeg_path
        self._timeout = timeout
        self._opened = False

    def open(self) -> None:
        if shutil.which(self._ffmpeg) is None:
            raise CapturePermissionError(f"{self._ffmpeg} is not installed")
        if not os.path.exists(self._device):
            raise CapturePermissionError(f"camera {self._device} not found")
        if not os.access(self._device, os.R_OK):
            raise CapturePermissionError(f"no permission to read {self._device}")
        self._opened = True

    def read_frame(self, profile: QualityProfile) -> str | None:
        if not self._opened:
            return None
        cmd = [
            self._ffmpeg,
            "-hide_banner",
            "-loglevel", "error",
            "-f", "v4l2",
            "-i", self._device,
            "-frames:v", "1",
            "-s", f"{profile.width}x{profile.height}",
            "-q:v", str(_jpeg_qscale(profile.jpeg_quality)),
            "-f", "image2pipe",
            "-vcodec", "mjpeg",
            "pipe:1",
        ]
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            log.warning("ffmpeg frame grab timed out on %s", self._device)
            return None
        if result.returncode != 0 or not result.stdout:
            log.warning(
                "ffmpeg frame grab failed (%s): %s",
                result.returncode,
                result.stderr.decode("utf-8", "replace").strip(),
            )
            return None
        return "data:image/jpeg;base64," + base64.b64encode(result.stdout).decode("ascii")

    def close(self) -> None:
        self._opened = False


class ArecordAudioSource:
    """Streams raw 16-bit mono PCM from ALSA through ``arecord``."""

    def __init__(
        self,
        device: str = "default",
        *,
        sample_rate: int = AUDIO_SAMPLE_RATE,
        chunk_ms: int = 750,
        arecord_path: str = "arecord",
    ):
        self._device = device
        self._sample_rate = int(sample_rate)
        self._chunk_bytes = int(self._sample_rate * 2 * chunk_ms / 1000)
        self._arecord = arecord_path
        self._proc: subprocess.Popen | None = None

    def open(self) -> None:
        cmd = [
            self._arecord,
            "-D", self._device,
            "-c", "1",
            "-f", "S16_LE",
            "-r", str(self._sample_rate),
            "-t", "raw",
            "-",
        ]
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise CapturePermissionError(f"unable to start arecord: {exc}") from exc
        if self._proc.poll() is not None:
            stderr = self._proc.stderr.read().decode("utf-8", "replace") if self._proc.stderr else ""
            self.close()
            raise CapturePermissionError(f"arecord exited immediately: {stderr.strip()}")

    def read_chunk(self) -> bytes:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return b""
        buf = bytearray()
        while len(buf) < self._chunk_bytes:
            piece = proc.stdout.read(self._chunk_bytes - len(buf))
            if not piece:
                break
            buf.extend(piece)
        return bytes(buf)

    def close(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=2.0)
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()


def encode_pcm_chunk(pcm: bytes) -> str:
    return base64.b64encode(pcm).decode("ascii")


def decode_pcm_chunk(chunk: str) -> bytes:
    """Decode a base64 PCM chunk, tolerating a ``data:...;base64,`` prefix."""

    payload = chunk.split(",", 1)[1] if chunk.startswith("data:") and "," in chunk else chunk
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid PCM chunk: {exc}") from exc


def _pcm_to_float32(pcm: bytes) -> np.ndarray:
    usable = len(pcm) - (len(pcm) % 2)
    if usable <= 0:
        return np.array([], dtype=np.float32)
    samples = np.frombuffer(pcm[:usable], dtype=np.int16).astype(np.float32)
    return samples / 32768.0


def chunk_peak(pcm: bytes) -> float:
    samples = _pcm_to_float32(pcm)
    if samples.size == 0:
        return 0.0
    return float(np.max(np.abs(samples)))


def smooth_level(previous: float, peak: float) -> float:
    return previous * LEVEL_DECAY + peak * (1.0 - LEVEL_DECAY)

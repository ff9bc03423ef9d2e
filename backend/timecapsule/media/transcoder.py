"""
ffmpeg / ffprobe wrapper.

Each call is one blocking child process with a hard timeout; on timeout the
child is killed and TranscoderError is raised. Nothing is retried.
"""
from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from timecapsule.core.config import Settings
from timecapsule.core.errors import TranscoderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    duration_seconds: float
    bitrate: Optional[int]
    width: int
    height: int


class Transcoder(Protocol):
    def transcode(self, source: str, target: str) -> None: ...

    def probe(self, path: str) -> ProbeResult: ...

    def extract_poster(self, source: str, target: str, offset_seconds: float) -> None: ...


def _even(expr: str) -> str:
    # libx264 with yuv420p needs even dimensions
    return f"trunc({expr}/2)*2"


class FFmpegTranscoder:
    def __init__(self, cfg: Settings):
        self.cfg = cfg

    def _run(self, args: Sequence[str], timeout: float, stage: str) -> subprocess.CompletedProcess:
        binary = args[0]
        if shutil.which(binary) is None:
            raise TranscoderError(f"{binary} not available", code="TranscoderUnavailable")
        try:
            proc = subprocess.run(
                list(args),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("%s timed out after %ss", stage, timeout)
            raise TranscoderError(f"{stage} timed out", code="TranscodeTimeout") from exc
        except OSError as exc:
            logger.error("%s could not start: %s", stage, exc)
            raise TranscoderError(f"{stage} failed to start") from exc

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", "replace")[-2000:]
            logger.error("%s exited with %s: %s", stage, proc.returncode, stderr)
            raise TranscoderError(f"{stage} failed", details={"stage": stage})
        return proc

    def transcode(self, source: str, target: str) -> None:
        max_w, max_h = self.cfg.max_video_size
        bitrate = self.cfg.MEDIA_VIDEO_MAX_BITRATE
        scale = (
            f"scale='min({max_w},iw)':'min({max_h},ih)':force_original_aspect_ratio=decrease,"
            f"scale={_even('iw')}:{_even('ih')}"
        )
        self._run(
            [
                self.cfg.FFMPEG_BINARY, "-hide_banner", "-nostdin", "-y",
                "-i", source,
                "-map", "0:v:0", "-map", "0:a:0?",
                "-vf", scale,
                "-c:v", "libx264", "-preset", self.cfg.MEDIA_VIDEO_PRESET,
                "-pix_fmt", "yuv420p",
                "-b:v", bitrate, "-maxrate", bitrate, "-bufsize", _double_rate(bitrate),
                "-c:a", "aac", "-b:a", self.cfg.MEDIA_VIDEO_AUDIO_BITRATE,
                "-movflags", "+faststart",
                target,
            ],
            timeout=self.cfg.MEDIA_TRANSCODE_TIMEOUT,
            stage="transcode",
        )

    def probe(self, path: str) -> ProbeResult:
        proc = self._run(
            [
                self.cfg.FFPROBE_BINARY, "-v", "error",
                "-print_format", "json",
                "-show_format", "-show_streams",
                path,
            ],
            timeout=self.cfg.MEDIA_PROBE_TIMEOUT,
            stage="probe",
        )
        try:
            return parse_probe_output(proc.stdout)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("probe output unreadable: %s", exc)
            raise TranscoderError("probe output unreadable", details={"stage": "probe"}) from exc

    def extract_poster(self, source: str, target: str, offset_seconds: float) -> None:
        max_w, max_h = self.cfg.poster_size
        self._run(
            [
                self.cfg.FFMPEG_BINARY, "-hide_banner", "-nostdin", "-y",
                "-ss", f"{offset_seconds:.3f}",
                "-i", source,
                "-frames:v", "1",
                "-vf", f"scale={max_w}:{max_h}:force_original_aspect_ratio=decrease",
                "-q:v", "3",
                target,
            ],
            timeout=self.cfg.MEDIA_PROBE_TIMEOUT,
            stage="poster",
        )


def _double_rate(rate: str) -> str:
    """'2500k' -> '5000k'; plain integers are bits per second."""
    rate = rate.strip().lower()
    if rate[-1:] in ("k", "m"):
        return f"{int(float(rate[:-1]) * 2)}{rate[-1]}"
    return str(int(rate) * 2)


def parse_probe_output(raw: bytes | str) -> ProbeResult:
    data = json.loads(raw)
    video = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
    if video is None:
        raise ValueError("no video stream")
    fmt = data.get("format", {})

    duration = fmt.get("duration") or video.get("duration")
    if duration is None:
        raise ValueError("no duration reported")
    bitrate = fmt.get("bit_rate") or video.get("bit_rate")

    return ProbeResult(
        duration_seconds=round(float(duration), 3),
        bitrate=int(bitrate) if bitrate not in (None, "N/A") else None,
        width=int(video["width"]),
        height=int(video["height"]),
    )

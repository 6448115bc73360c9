from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import anyio
from PIL import Image, UnidentifiedImageError

from assetflow.core.config import Settings
from assetflow.core.errors import TranscodeFailure
from assetflow.schemas.media import VariantInfo
from assetflow.services.transcoder import run_media_tool


@dataclass(frozen=True)
class ProbeResult:
    width: int
    height: int
    size: int
    duration: float | None = None

    def to_variant(self, path: str, *, state: str = "ready") -> VariantInfo:
        return VariantInfo(
            path=path,
            width=self.width,
            height=self.height,
            size=self.size,
            duration=self.duration,
            state=state,  # type: ignore[arg-type]
        )


def _parse_duration(raw: object) -> float | None:
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


class MediaProber:
    def __init__(self, *, ffprobe_bin: str = "ffprobe", timeout: float = 60) -> None:
        self.ffprobe_bin = ffprobe_bin
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaProber":
        return cls(ffprobe_bin=settings.ffprobe_bin, timeout=settings.probe_timeout_seconds)

    async def probe_video(self, path: Path) -> ProbeResult:
        cmd = [
            self.ffprobe_bin,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        stdout = await run_media_tool(cmd, timeout=self.timeout)
        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
        except ValueError as exc:
            raise TranscodeFailure(f"ffprobe returned invalid JSON for {path.name}") from exc

        video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if video_stream is None:
            raise TranscodeFailure(f"No video stream found in {path.name}")

        fmt = data.get("format", {}) or {}
        size = fmt.get("size")
        return ProbeResult(
            width=int(video_stream.get("width") or 0),
            height=int(video_stream.get("height") or 0),
            size=int(size) if size else path.stat().st_size,
            duration=_parse_duration(fmt.get("duration") or video_stream.get("duration")),
        )

    async def probe_image(self, path: Path) -> ProbeResult:
        def _probe() -> ProbeResult:
            with Image.open(path) as img:
                width, height = img.size
            return ProbeResult(width=int(width), height=int(height), size=path.stat().st_size)

        try:
            return await anyio.to_thread.run_sync(_probe)
        except (OSError, UnidentifiedImageError) as exc:
            raise TranscodeFailure(f"Could not read image {path.name}: {exc}") from exc

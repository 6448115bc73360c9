from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from pathlib import Path

import anyio
from PIL import Image, UnidentifiedImageError

from assetflow.core.config import Settings
from assetflow.core.errors import TranscodeFailure

logger = logging.getLogger(__name__)


def _tail(text: str, limit: int = 800) -> str:
    text = (text or "").strip()
    return text[-limit:] if len(text) > limit else text


async def _reap(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with suppress(ProcessLookupError):
        process.kill()
    # Shielded so an outer cancellation cannot leave a zombie behind.
    await asyncio.shield(process.wait())


def tool_budget(stage_seconds: float) -> float:
    """Per-invocation limit that stays inside the stage timeout enclosing it."""
    return max(1.0, float(stage_seconds) * 0.8)


async def run_media_tool(cmd: list[str], *, timeout: float) -> bytes:
    """Run an external media tool and return its stdout.

    Raises ``TranscodeFailure`` on a non-zero exit, a missing binary or a timeout.
    The child is killed and reaped whenever the call ends early, including when an
    enclosing stage timeout cancels it.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as exc:
        raise TranscodeFailure(f"{cmd[0]} not found", tool=cmd[0]) from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _reap(process)
        raise TranscodeFailure(f"{Path(cmd[0]).name} timed out after {timeout}s", tool=cmd[0]) from exc
    except BaseException:
        await _reap(process)
        logger.warning("media_tool_killed", extra={"tool": Path(cmd[0]).name, "pid": process.pid})
        raise

    if process.returncode != 0:
        raise TranscodeFailure(
            f"{Path(cmd[0]).name} failed (exit {process.returncode}): {_tail(stderr.decode('utf-8', errors='ignore'))}",
            tool=cmd[0],
        )
    return stdout


class Transcoder:
    def __init__(self, *, ffmpeg_bin: str = "ffmpeg", timeout: float = 1440, frame_timeout: float | None = None) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout
        self.frame_timeout = frame_timeout if frame_timeout is not None else timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Transcoder":
        stages = settings.job_timeout_seconds
        return cls(
            ffmpeg_bin=settings.ffmpeg_bin,
            timeout=tool_budget(stages.get("processing", 1800)),
            frame_timeout=tool_budget(stages.get("thumbnail", 300)),
        )

    async def transcode_to_height(self, source: Path, destination: Path, height: int) -> Path:
        """Render ``source`` as H.264/AAC MP4 scaled to ``height`` lines, keeping aspect ratio."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-i", str(source),
            "-vf", f"scale=-2:{int(height)}",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", "23",
            "-c:a", "aac",
            "-movflags", "+faststart",
            str(destination),
        ]
        logger.info("transcode_started", extra={"source": source.name, "target_height": int(height)})
        await run_media_tool(cmd, timeout=self.timeout)
        return destination

    async def extract_frame(self, source: Path, destination: Path, *, at_seconds: float, width: int) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg_bin,
            "-y",
            "-ss", f"{max(0.0, float(at_seconds)):.3f}",
            "-i", str(source),
            "-frames:v", "1",
            "-vf", f"scale={int(width)}:-2",
            "-q:v", "2",
            str(destination),
        ]
        await run_media_tool(cmd, timeout=self.frame_timeout)
        return destination

    async def resize_image(self, source: Path, destination: Path, *, width: int) -> tuple[int, int]:
        """Write a JPEG of ``source`` scaled to ``width`` pixels wide; returns the output size."""
        destination.parent.mkdir(parents=True, exist_ok=True)

        def _render() -> tuple[int, int]:
            with Image.open(source) as img:
                out = img.convert("RGB")
                if out.width > width:
                    height = max(1, round(out.height * width / out.width))
                    out = out.resize((int(width), int(height)), Image.Resampling.LANCZOS)
                out.save(destination, format="JPEG", optimize=True, quality=86)
                return out.size

        try:
            return await anyio.to_thread.run_sync(_render)
        except (OSError, UnidentifiedImageError) as exc:
            raise TranscodeFailure(f"Could not resize {source.name}: {exc}") from exc

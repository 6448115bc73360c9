import asyncio
import json
import os
import sys
from pathlib import Path

import pytest
from PIL import Image

from assetflow.core.config import Settings
from assetflow.core.errors import TranscodeFailure
from assetflow.services import media_probe, storage_keys, transcoder
from assetflow.services.media_probe import MediaProber
from assetflow.services.transcoder import Transcoder


def test_storage_keys_derive_from_original() -> None:
    assert storage_keys.safe_filename("../My Holiday (1).MOV") == "My-Holiday-1-.MOV"
    assert storage_keys.safe_filename("") == "upload.bin"
    assert storage_keys.safe_filename("C:\\clips\\a.mp4") == "a.mp4"

    original = "assets/abc/clip.mp4"
    assert storage_keys.resolution_key(original, 720) == "assets/abc/clip-720p.mp4"
    assert storage_keys.thumbnail_key(original) == "assets/abc/clip-thumbnail.jpg"
    assert storage_keys.thumbnail_key("assets/abc/photo.png") == "assets/abc/photo-thumbnail.jpg"


@pytest.mark.anyio
async def test_run_media_tool_returns_stdout() -> None:
    out = await transcoder.run_media_tool([sys.executable, "-c", "print('ok')"], timeout=10)
    assert out.strip() == b"ok"


@pytest.mark.anyio
async def test_run_media_tool_missing_binary() -> None:
    with pytest.raises(TranscodeFailure) as exc:
        await transcoder.run_media_tool(["definitely-not-ffmpeg-binary", "-version"], timeout=5)
    assert "not found" in str(exc.value)


@pytest.mark.anyio
async def test_run_media_tool_non_zero_exit_includes_stderr() -> None:
    cmd = [sys.executable, "-c", "import sys; sys.stderr.write('Invalid data found'); sys.exit(3)"]
    with pytest.raises(TranscodeFailure) as exc:
        await transcoder.run_media_tool(cmd, timeout=10)
    assert "exit 3" in str(exc.value)
    assert "Invalid data found" in str(exc.value)


@pytest.mark.anyio
async def test_run_media_tool_kills_on_timeout() -> None:
    with pytest.raises(TranscodeFailure) as exc:
        await transcoder.run_media_tool([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.2)
    assert "timed out" in str(exc.value)


@pytest.mark.anyio
async def test_probe_video_parses_ffprobe_json(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured: dict[str, list[str]] = {}
    payload = {
        "streams": [
            {"codec_type": "audio", "duration": "12.0"},
            {"codec_type": "video", "width": 1920, "height": 1080},
        ],
        "format": {"duration": "12.480000", "size": "2048"},
    }

    async def _fake_tool(cmd, *, timeout):
        captured["cmd"] = cmd
        return json.dumps(payload).encode()

    monkeypatch.setattr(media_probe, "run_media_tool", _fake_tool)
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"x")

    result = await MediaProber(ffprobe_bin="ffprobe", timeout=5).probe_video(clip)

    assert (result.width, result.height, result.size) == (1920, 1080, 2048)
    assert result.duration == pytest.approx(12.48)
    assert captured["cmd"][0] == "ffprobe"
    assert captured["cmd"][-1] == str(clip)


@pytest.mark.anyio
async def test_probe_video_without_video_stream(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    async def _fake_tool(cmd, *, timeout):
        return b'{"streams": [{"codec_type": "audio"}], "format": {}}'

    monkeypatch.setattr(media_probe, "run_media_tool", _fake_tool)

    with pytest.raises(TranscodeFailure):
        await MediaProber().probe_video(tmp_path / "audio-only.m4a")


@pytest.mark.anyio
async def test_probe_image_and_resize(tmp_path: Path) -> None:
    source = tmp_path / "photo.png"
    Image.new("RGBA", (1000, 500), color=(1, 2, 3, 255)).save(source, format="PNG")

    probe = await MediaProber().probe_image(source)
    assert (probe.width, probe.height) == (1000, 500)
    assert probe.to_variant("assets/x/photo.png").state == "ready"

    out = tmp_path / "thumb.jpg"
    assert await Transcoder().resize_image(source, out, width=200) == (200, 100)
    with Image.open(out) as img:
        assert img.format == "JPEG"
        assert img.size == (200, 100)

    # Images narrower than the target keep their size.
    small = tmp_path / "small.jpg"
    assert await Transcoder().resize_image(out, small, width=400) == (200, 100)


@pytest.mark.anyio
async def test_probe_image_rejects_non_images(tmp_path: Path) -> None:
    junk = tmp_path / "junk.png"
    junk.write_bytes(b"not an image")

    with pytest.raises(TranscodeFailure):
        await MediaProber().probe_image(junk)
    with pytest.raises(TranscodeFailure):
        await Transcoder().resize_image(junk, tmp_path / "out.jpg", width=100)


@pytest.mark.anyio
async def test_transcode_command_line(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    commands: list[list[str]] = []

    async def _fake_tool(cmd, *, timeout):
        commands.append(cmd)
        return b""

    monkeypatch.setattr(transcoder, "run_media_tool", _fake_tool)
    tool = Transcoder(ffmpeg_bin="/usr/bin/ffmpeg", timeout=30)

    await tool.transcode_to_height(tmp_path / "in.mp4", tmp_path / "out" / "720p.mp4", 720)
    await tool.extract_frame(tmp_path / "in.mp4", tmp_path / "frame.jpg", at_seconds=6.24, width=320)

    transcode, frame = commands
    assert transcode[0] == "/usr/bin/ffmpeg"
    assert "scale=-2:720" in transcode
    assert transcode[-1] == str(tmp_path / "out" / "720p.mp4")
    assert (tmp_path / "out").is_dir()
    assert frame[frame.index("-ss") + 1] == "6.240"
    assert "scale=320:-2" in frame


@pytest.mark.anyio
async def test_run_media_tool_kills_child_when_stage_times_out(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"
    script = f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)"

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(transcoder.run_media_tool([sys.executable, "-c", script], timeout=60), timeout=1.5)

    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_tool_limits_sit_inside_stage_timeouts() -> None:
    settings = Settings(job_timeout_seconds={"processing": 1000, "thumbnail": 100, "upload": 50})

    tool = Transcoder.from_settings(settings)

    assert tool.timeout < 1000
    assert tool.frame_timeout < 100
    assert transcoder.tool_budget(0) == 1.0

"""
FFmpeg / FFprobe layer.

Key public functions:
  probe_duration(path)                 — FFprobe: container duration in seconds
  build_clip_command(spec, ...)        — FFmpeg argument list for one planned clip
  render_clip(job_id, spec, ...)       — run FFmpeg for one clip → output path
  tool_version(binary)                 — first line of `<binary> -version` (binary name if silent), or None
"""

import asyncio
import json
import logging
import math
import os
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from planner import ClipSpec, ClipVariant

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration (environment variables)
# ---------------------------------------------------------------------------
FFMPEG_PATH: str = os.getenv("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH: str = os.getenv("FFPROBE_PATH", "ffprobe")
CLIP_FRAME_SIZE: int = int(os.getenv("CLIP_FRAME_SIZE", "1080"))

# Unset means an ffmpeg run may take as long as it needs
_timeout_env = os.getenv("TRANSCODE_TIMEOUT", "")
TRANSCODE_TIMEOUT: Optional[float] = float(_timeout_env) if _timeout_env else None

# Shared by image+audio and video clips
VIDEO_ENCODE_ARGS: Tuple[str, ...] = (
    "-c:v", "libx264", "-preset", "veryfast", "-crf", "23",
    "-c:a", "aac", "-b:a", "128k",
)


class CommandFailed(RuntimeError):
    """An external command exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command failed (exit {returncode}): {' '.join(args)}\n"
            f"stderr: {stderr}"
        )

    @property
    def diagnostic(self) -> str:
        """The tool's own error text, or a generic line when it printed nothing."""
        return self.stderr.strip() or f"exited with status {self.returncode}"


class ProbeFailed(RuntimeError):
    """The source could not be inspected; message is FFprobe's diagnostic."""


class TranscodeFailed(RuntimeError):
    """One clip could not be rendered; message is FFmpeg's diagnostic."""


# ---------------------------------------------------------------------------
# Low-level subprocess helper
# ---------------------------------------------------------------------------

def _run_sync(*args: str, timeout: Optional[float] = None) -> Tuple[str, str]:
    """Run an external command synchronously. Raises CommandFailed on non-zero exit."""
    result = subprocess.run(
        list(args),
        capture_output=True,
        timeout=timeout,
    )
    stdout = result.stdout.decode(errors="replace")
    stderr = result.stderr.decode(errors="replace")
    if result.returncode != 0:
        raise CommandFailed(args, result.returncode, stderr)
    return stdout, stderr


async def _run(*args: str, timeout: Optional[float] = None) -> Tuple[str, str]:
    """Run an external command in a thread pool (non-blocking, cross-platform)."""
    return await asyncio.to_thread(_run_sync, *args, timeout=timeout)


# ---------------------------------------------------------------------------
# FFprobe
# ---------------------------------------------------------------------------

async def probe_duration(source_path: str) -> float:
    """Return the duration of a media file in seconds. Raises ProbeFailed."""
    try:
        stdout, _ = await _run(
            FFPROBE_PATH, "-v", "error",
            "-show_entries", "format=duration",
            "-of", "json",
            source_path,
        )
    except CommandFailed as exc:
        raise ProbeFailed(exc.diagnostic) from exc
    except OSError as exc:
        # Binary not found / not executable
        raise ProbeFailed(str(exc)) from exc

    try:
        duration = float(json.loads(stdout)["format"]["duration"])
    except (ValueError, KeyError, TypeError) as exc:
        raise ProbeFailed(f"Could not determine duration for: {source_path}") from exc

    if not math.isfinite(duration) or duration < 0:
        raise ProbeFailed(f"Invalid duration {duration} for: {source_path}")
    return duration


async def tool_version(binary: str) -> Optional[str]:
    """First line of `<binary> -version`, the binary name if it printed nothing, or None if it cannot be run."""
    try:
        stdout, _ = await _run(binary, "-version")
    except (CommandFailed, OSError):
        return None
    return stdout.strip().splitlines()[0] if stdout.strip() else binary


# ---------------------------------------------------------------------------
# FFmpeg command builder
# ---------------------------------------------------------------------------

def build_clip_command(
    spec: ClipSpec,
    source_path: str,
    image_paths: Sequence[str],
    output_path: str,
) -> List[str]:
    """
    Build the FFmpeg argument list for one clip.

      audio:        trim [start, start+duration) → MP3
      image_audio:  hold the still image for the clip, scale it to a square
                    frame, lay the trimmed audio under it, stop at the
                    shorter stream, faststart MP4
      video:        trim the source video and re-encode with the same settings
    """
    start = str(spec.start)
    duration = str(spec.duration)
    args = [FFMPEG_PATH, "-y", "-hide_banner", "-loglevel", "error"]

    if spec.variant is ClipVariant.AUDIO:
        args += [
            "-ss", start, "-t", duration, "-i", source_path,
            "-vn",
            "-c:a", "libmp3lame", "-b:a", "192k",
        ]

    elif spec.variant is ClipVariant.IMAGE_AUDIO:
        if spec.image_index is None or not 0 <= spec.image_index < len(image_paths):
            raise ValueError(
                f"Clip {spec.index} needs image #{spec.image_index} "
                f"but {len(image_paths)} image(s) were supplied"
            )
        size = CLIP_FRAME_SIZE
        args += [
            "-loop", "1", "-framerate", "1", "-t", duration,
            "-i", image_paths[spec.image_index],
            "-ss", start, "-t", duration, "-i", source_path,
            "-map", "0:v:0", "-map", "1:a:0",
            "-vf", f"scale={size}:{size},format=yuv420p",
            *VIDEO_ENCODE_ARGS,
            "-shortest",
            "-movflags", "+faststart",
        ]

    else:
        args += [
            "-ss", start, "-t", duration, "-i", source_path,
            *VIDEO_ENCODE_ARGS,
            "-movflags", "+faststart",
        ]

    args.append(output_path)
    return args


# ---------------------------------------------------------------------------
# Clip render
# ---------------------------------------------------------------------------

async def render_clip(
    job_id: str,
    spec: ClipSpec,
    source_path: str,
    image_paths: Sequence[str],
    output_dir: str,
) -> Path:
    """Render one planned clip into *output_dir*. Raises TranscodeFailed."""
    output_path = Path(output_dir) / spec.output_name(job_id)
    args = build_clip_command(spec, source_path, image_paths, str(output_path))

    try:
        await _run(*args, timeout=TRANSCODE_TIMEOUT)
    except CommandFailed as exc:
        raise TranscodeFailed(exc.diagnostic) from exc
    except subprocess.TimeoutExpired as exc:
        raise TranscodeFailed(f"ffmpeg timed out after {exc.timeout:g}s") from exc
    except OSError as exc:
        raise TranscodeFailed(str(exc)) from exc

    logger.debug("[Job %s] Rendered %s", job_id, output_path.name)
    return output_path

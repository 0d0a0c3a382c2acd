"""Trailing silence trimming with ffmpeg."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import os
from pathlib import Path
import re

from songworker.logging import get_logger
from songworker.providers.base import TrimResult

logger = get_logger(__name__)

SILENCE_FILTER = "silencedetect=noise=-50dB:d=2"
MIN_TRAILING_GAP_S = 3.0
TAIL_PADDING_S = 1.0

_DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_SILENCE_START_PATTERN = re.compile(r"silence_start:\s*([\d.]+)")


def parse_duration(stderr: str) -> float | None:
    match = _DURATION_PATTERN.search(stderr)
    if match is None:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def find_trim_point(stderr: str) -> tuple[float | None, float | None]:
    """Return ``(duration, trim_point)`` parsed from silencedetect output.

    ``trim_point`` is ``None`` when the file has no trailing silence long
    enough to be worth cutting.
    """

    duration = parse_duration(stderr)
    if duration is None:
        return None, None
    starts = [float(value) for value in _SILENCE_START_PATTERN.findall(stderr)]
    if not starts:
        return duration, None
    last_start = starts[-1]
    if duration - last_start < MIN_TRAILING_GAP_S:
        return duration, None
    trim_point = last_start + TAIL_PADDING_S
    if trim_point >= duration:
        return duration, None
    return duration, trim_point


async def _run_ffmpeg(binary: str, *args: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        binary,
        *args,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    return process.returncode or 0, stderr.decode("utf-8", errors="replace")


@dataclass(slots=True)
class FfmpegSilenceTrimmer:
    binary: str = "ffmpeg"
    enabled: bool = True

    async def trim(self, audio_file: Path) -> TrimResult:
        """Cut trailing silence in place; failures keep the original file."""

        if not self.enabled:
            return TrimResult(trimmed=False)
        try:
            _, stderr = await _run_ffmpeg(
                self.binary, "-i", str(audio_file), "-af", SILENCE_FILTER, "-f", "null", "-"
            )
            duration, trim_point = find_trim_point(stderr)
            if duration is None:
                return TrimResult(trimmed=False)
            if trim_point is None:
                return TrimResult(False, duration, duration)

            tmp_file = audio_file.with_name(f".trimmed-{audio_file.name}")
            returncode, stderr = await _run_ffmpeg(
                self.binary,
                "-i",
                str(audio_file),
                "-t",
                f"{trim_point:.3f}",
                "-c",
                "copy",
                "-y",
                str(tmp_file),
            )
            if returncode != 0 or not tmp_file.exists():
                logger.warning("Silence trim failed for %s: %s", audio_file, stderr[-200:])
                tmp_file.unlink(missing_ok=True)
                return TrimResult(False, duration, duration)
            os.replace(tmp_file, audio_file)
        except FileNotFoundError:
            logger.warning("ffmpeg binary %s not found; skipping silence trim", self.binary)
            return TrimResult(trimmed=False)
        except OSError as exc:
            logger.warning("Silence trim failed for %s (keeping original): %s", audio_file, exc)
            return TrimResult(trimmed=False)

        logger.info("Trimmed %s: %.1fs -> %.1fs", audio_file, duration, trim_point)
        return TrimResult(True, duration, trim_point)


__all__ = ["FfmpegSilenceTrimmer", "find_trim_point", "parse_duration"]

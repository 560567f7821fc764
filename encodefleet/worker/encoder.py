"""Encode capability: runs ffmpeg on the fetched input."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ValidationError

from encodefleet.core.errors import ConfigurationError, EncodeFailure

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


class EncodeProfile(BaseModel):
    """The parts of a job profile the ffmpeg encoder understands."""
    container: str = Field(default="mp4", pattern=r"^[a-z0-9]{2,8}$")
    ffmpeg_args: List[str] = Field(default_factory=list)
    content_type: str = "video/mp4"
    timeout_seconds: float = Field(default=3600.0, gt=0)


def parse_profile(profile: Dict[str, Any]) -> EncodeProfile:
    try:
        return EncodeProfile(**(profile or {}))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid encode profile: {e.errors()[0].get('msg', 'invalid')}") from e


class FFmpegEncoder:
    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary

    def build_command(self, source: Path, output: Path, profile: EncodeProfile) -> List[str]:
        return [self.binary, "-hide_banner", "-nostdin", "-y", "-i", str(source), *profile.ffmpeg_args, str(output)]

    def encode(self, data: bytes, profile: Dict[str, Any]) -> bytes:
        """Encode ``data`` according to ``profile`` and return the output bytes."""
        parsed = parse_profile(profile)
        with tempfile.TemporaryDirectory(prefix="encodefleet-") as tmp:
            source = Path(tmp) / "input"
            output = Path(tmp) / f"output.{parsed.container}"
            source.write_bytes(data)
            cmd = self.build_command(source, output, parsed)
            logger.info(f"Running: {' '.join(cmd)}")
            try:
                result = subprocess.run(cmd, capture_output=True, timeout=parsed.timeout_seconds)
            except FileNotFoundError as e:
                raise EncodeFailure(f"ffmpeg binary not found: {self.binary}") from e
            except subprocess.TimeoutExpired as e:
                raise EncodeFailure(f"ffmpeg timed out after {parsed.timeout_seconds}s") from e
            if result.returncode != 0:
                stderr = result.stderr.decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:]
                raise EncodeFailure(f"ffmpeg exited with {result.returncode}: {stderr}")
            if not output.exists():
                raise EncodeFailure("ffmpeg produced no output")
            return output.read_bytes()

"""Duration and tag extraction via ffprobe."""

import json
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import MetadataExtractionFailure
from .models import MediaMetadata, MediaTags

logger = logging.getLogger(__name__)


class MetadataExtractor(ABC):
    """Reads duration and descriptive tags from an input file."""

    @abstractmethod
    def extract(self, path: Path) -> MediaMetadata:
        """
        Raises:
            MetadataExtractionFailure: If the file cannot be probed
        """
        pass


def _lower_keys(tags: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # Tag key case varies by container (TITLE in flac, title in mp4)
    return {str(k).lower(): str(v) for k, v in (tags or {}).items()}


def parse_probe_output(data: Dict[str, Any]) -> MediaMetadata:
    """Build MediaMetadata from ffprobe ``-show_format -show_streams`` JSON.

    Format-level tags win over stream-level tags; duration falls back to the
    longest stream when the container doesn't report one.
    """
    fmt = data.get("format", {}) or {}
    streams = data.get("streams", []) or []

    duration = 0.0
    try:
        duration = float(fmt.get("duration") or 0.0)
    except (TypeError, ValueError):
        duration = 0.0
    if duration <= 0:
        for stream in streams:
            try:
                duration = max(duration, float(stream.get("duration") or 0.0))
            except (TypeError, ValueError):
                continue

    tags: Dict[str, str] = {}
    for stream in streams:
        for k, v in _lower_keys(stream.get("tags")).items():
            tags.setdefault(k, v)
    tags.update(_lower_keys(fmt.get("tags")))

    return MediaMetadata(
        duration=duration,
        tags=MediaTags(
            title=tags.get("title", ""),
            album=tags.get("album", ""),
            artist=tags.get("artist", tags.get("album_artist", "")),
        ),
    )


class FfprobeMetadataExtractor(MetadataExtractor):
    """Runs ffprobe and parses its JSON output."""

    def __init__(self, ffprobe_path: Optional[str] = None, timeout_s: int = 30):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    def extract(self, path: Path) -> MediaMetadata:
        cmd = [
            self._get_ffprobe_exe(),
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                check=True,
                text=True,
                timeout=self.timeout_s,
            )
            data = json.loads(result.stdout)
        except subprocess.CalledProcessError as e:
            raise MetadataExtractionFailure(f"ffprobe failed for {path}: {e.stderr}") from e
        except json.JSONDecodeError as e:
            raise MetadataExtractionFailure(f"ffprobe output parsing failed: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise MetadataExtractionFailure(f"ffprobe timed out after {self.timeout_s}s") from e
        except OSError as e:
            raise MetadataExtractionFailure(f"could not run ffprobe: {e}") from e

        metadata = parse_probe_output(data)
        logger.debug(f"Probed {path}: duration={metadata.duration:.2f}s tags={metadata.tags}")
        return metadata

    def _get_ffprobe_exe(self) -> str:
        """Configured path, else PATH, else an ffprobe next to the ffmpeg binary.

        Raises:
            MetadataExtractionFailure: If no ffprobe executable can be found
        """
        if self.ffprobe_path:
            return self.ffprobe_path

        found = shutil.which("ffprobe")
        if found:
            return found

        # imageio-ffmpeg bundles ffmpeg only; a sibling ffprobe exists on some installs
        import imageio_ffmpeg
        try:
            ffmpeg = Path(imageio_ffmpeg.get_ffmpeg_exe())
        except RuntimeError:
            ffmpeg = None
        if ffmpeg is not None:
            sibling = ffmpeg.with_name(ffmpeg.name.replace("ffmpeg", "ffprobe", 1))
            if sibling.is_file():
                return str(sibling)

        raise MetadataExtractionFailure(
            "ffprobe not found: install ffmpeg (with ffprobe) on PATH or set engine.ffprobe_path"
        )

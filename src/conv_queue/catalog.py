"""Static format and quality lookup tables."""

from typing import Dict, List, Optional

from .models import FormatConfig, QualityPreset

DEFAULT_QUALITY = "medium"

FORMATS: Dict[str, FormatConfig] = {
    # Video containers
    "mp4": FormatConfig(video_codec="libx264", audio_codec="aac", video_bitrate=1200, audio_bitrate=128),
    "mp4-hq": FormatConfig(video_codec="libx264", audio_codec="aac", video_bitrate=4000, audio_bitrate=256),
    "webm": FormatConfig(video_codec="libvpx-vp9", audio_codec="libopus", video_bitrate=1000, audio_bitrate=128),
    "mkv": FormatConfig(video_codec="libx265", audio_codec="aac", video_bitrate=1000, audio_bitrate=192),
    "mov": FormatConfig(video_codec="libx264", audio_codec="aac", video_bitrate=1500, audio_bitrate=192),
    "avi": FormatConfig(video_codec="mpeg4", audio_codec="libmp3lame", video_bitrate=1200, audio_bitrate=192),
    # Audio only
    "mp3": FormatConfig(video_codec=None, audio_codec="libmp3lame", video_bitrate=0, audio_bitrate=320),
    "m4a": FormatConfig(video_codec=None, audio_codec="aac", video_bitrate=0, audio_bitrate=256),
    "ogg": FormatConfig(video_codec=None, audio_codec="libvorbis", video_bitrate=0, audio_bitrate=192),
    "opus": FormatConfig(video_codec=None, audio_codec="libopus", video_bitrate=0, audio_bitrate=128),
    "flac": FormatConfig(video_codec=None, audio_codec="flac", video_bitrate=0, audio_bitrate=0),
    "wav": FormatConfig(video_codec=None, audio_codec="pcm_s16le", video_bitrate=0, audio_bitrate=0),
}

QUALITY_PRESETS: Dict[str, QualityPreset] = {
    "low": QualityPreset(video_multiplier=0.5, audio_multiplier=0.75, effort_preset="veryfast", quality_factor=28),
    "medium": QualityPreset(video_multiplier=1.0, audio_multiplier=1.0, effort_preset="medium", quality_factor=23),
    "high": QualityPreset(video_multiplier=1.5, audio_multiplier=1.25, effort_preset="slow", quality_factor=20),
    "ultra": QualityPreset(video_multiplier=2.0, audio_multiplier=1.5, effort_preset="veryslow", quality_factor=17),
}


def lookup_format(format_id: str) -> Optional[FormatConfig]:
    return FORMATS.get(format_id)


def lookup_quality(level: Optional[str] = None) -> Optional[QualityPreset]:
    """Return the preset for ``level``; unset means medium, unknown means None."""
    return QUALITY_PRESETS.get(level or DEFAULT_QUALITY)


def available_formats() -> List[str]:
    return sorted(FORMATS)


def container_for(format_id: str) -> str:
    """Container/extension for a format id: the part before any '-' suffix."""
    return format_id.split("-", 1)[0]

"""Encoder parameter resolution.

Layers three sources, highest priority first:

1. Explicit task overrides (codec, bitrate)
2. The format's catalog defaults
3. Hard-coded fallbacks (libx264 / aac / 1200 kbps / 320 kbps)

The chosen quality preset then scales both bitrates and supplies the CRF and
effort preset. Everything here is pure: the same task and tables always give
the same ResolvedEncodeParameters.
"""

from typing import Optional

from .catalog import container_for, lookup_format, lookup_quality
from .models import ConversionTask, FormatConfig, QualityPreset, ResolvedEncodeParameters

FALLBACK_VIDEO_CODEC = "libx264"
FALLBACK_AUDIO_CODEC = "aac"
FALLBACK_VIDEO_BITRATE = 1200
FALLBACK_AUDIO_BITRATE = 320
FALLBACK_QUALITY_FACTOR = 23
FALLBACK_EFFORT_PRESET = "medium"


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve_encode_parameters(
    task: ConversionTask,
    format_config: Optional[FormatConfig],
    quality_preset: Optional[QualityPreset],
) -> ResolvedEncodeParameters:
    """Combine task overrides, format defaults and quality preset.

    Args:
        task: The conversion task
        format_config: Catalog entry for ``task.format`` (None if unknown)
        quality_preset: Preset for ``task.quality`` (None falls back to mid-level)

    Returns:
        ResolvedEncodeParameters with bitrates in kbps. A bitrate of 0 stays 0
        (codec-determined) regardless of the multiplier.
    """
    fmt_video_bitrate = format_config.video_bitrate if format_config else None
    fmt_audio_bitrate = format_config.audio_bitrate if format_config else None

    base_video = _first_set(task.video_bitrate, fmt_video_bitrate, FALLBACK_VIDEO_BITRATE)
    base_audio = _first_set(task.audio_bitrate, fmt_audio_bitrate, FALLBACK_AUDIO_BITRATE)

    if quality_preset is not None:
        video_multiplier = quality_preset.video_multiplier
        audio_multiplier = quality_preset.audio_multiplier
        quality_factor = quality_preset.quality_factor
        effort_preset = quality_preset.effort_preset
    else:
        video_multiplier = audio_multiplier = 1.0
        quality_factor = FALLBACK_QUALITY_FACTOR
        effort_preset = FALLBACK_EFFORT_PRESET

    # Audio-only formats carry no video codec unless the task asks for one
    if format_config is not None:
        video_codec = _first_set(task.video_codec, format_config.video_codec)
        audio_codec = _first_set(task.audio_codec, format_config.audio_codec)
    else:
        video_codec = _first_set(task.video_codec, FALLBACK_VIDEO_CODEC)
        audio_codec = _first_set(task.audio_codec, FALLBACK_AUDIO_CODEC)

    return ResolvedEncodeParameters(
        video_bitrate=round(base_video * video_multiplier),
        audio_bitrate=round(base_audio * audio_multiplier),
        quality_factor=quality_factor,
        effort_preset=effort_preset,
        video_codec=video_codec,
        audio_codec=audio_codec,
        container=container_for(task.format),
    )


def resolve_for_task(task: ConversionTask) -> ResolvedEncodeParameters:
    """Look up the task's catalog entries and resolve its parameters."""
    return resolve_encode_parameters(
        task, lookup_format(task.format), lookup_quality(task.quality)
    )

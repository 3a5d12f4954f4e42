"""Tests for catalog lookups and encoder parameter resolution."""

import pytest

from conv_queue.bitrate import resolve_encode_parameters, resolve_for_task
from conv_queue.catalog import (
    FORMATS,
    QUALITY_PRESETS,
    available_formats,
    container_for,
    lookup_format,
    lookup_quality,
)
from conv_queue.models import ConversionTask


def task(**kwargs):
    kwargs.setdefault("input_file", "in.mov")
    kwargs.setdefault("format", "mp4")
    return ConversionTask(**kwargs)


class TestCatalog:
    def test_lookup_known_format(self):
        fmt = lookup_format("webm")
        assert fmt.video_codec == "libvpx-vp9"
        assert fmt.audio_codec == "libopus"

    def test_lookup_unknown_format(self):
        assert lookup_format("xyz") is None

    def test_quality_defaults_to_medium(self):
        assert lookup_quality(None) is QUALITY_PRESETS["medium"]
        assert lookup_quality("") is QUALITY_PRESETS["medium"]

    def test_unknown_quality(self):
        assert lookup_quality("extreme") is None

    def test_audio_formats_have_no_video_codec(self):
        for name in ("mp3", "m4a", "ogg", "opus", "flac", "wav"):
            assert FORMATS[name].audio_only, name
            assert FORMATS[name].video_bitrate == 0

    def test_container_strips_variant_suffix(self):
        assert container_for("mp4-hq") == "mp4"
        assert container_for("mkv") == "mkv"

    def test_available_formats_sorted(self):
        names = available_formats()
        assert names == sorted(names)
        assert "mp4-hq" in names


class TestResolveEncodeParameters:
    """Layering of task overrides, format defaults and quality presets."""

    @pytest.mark.parametrize(
        "quality,video,audio,crf,preset",
        [
            ("low", 600, 96, 28, "veryfast"),
            (None, 1200, 128, 23, "medium"),
            ("medium", 1200, 128, 23, "medium"),
            ("high", 1800, 160, 20, "slow"),
            ("ultra", 2400, 192, 17, "veryslow"),
        ],
    )
    def test_quality_scales_format_defaults(self, quality, video, audio, crf, preset):
        params = resolve_for_task(task(quality=quality))
        assert params.video_bitrate == video
        assert params.audio_bitrate == audio
        assert params.quality_factor == crf
        assert params.effort_preset == preset

    def test_codecs_come_from_format(self):
        params = resolve_for_task(task(format="mkv"))
        assert params.video_codec == "libx265"
        assert params.audio_codec == "aac"
        assert params.container == "mkv"

    def test_task_overrides_win(self):
        params = resolve_for_task(
            task(video_codec="libx265", audio_codec="libopus", video_bitrate=3000, audio_bitrate=64)
        )
        assert params.video_codec == "libx265"
        assert params.audio_codec == "libopus"
        assert params.video_bitrate == 3000
        assert params.audio_bitrate == 64

    def test_overrides_are_still_scaled_by_quality(self):
        params = resolve_for_task(task(video_bitrate=1000, quality="high"))
        assert params.video_bitrate == 1500

    def test_unknown_format_uses_fallbacks(self):
        params = resolve_for_task(task(format="xyz"))
        assert params.video_codec == "libx264"
        assert params.audio_codec == "aac"
        assert params.video_bitrate == 1200
        assert params.audio_bitrate == 320
        assert params.container == "xyz"

    def test_audio_only_format(self):
        params = resolve_for_task(task(format="mp3", quality="low"))
        assert params.video_codec is None
        assert params.video_bitrate == 0
        assert params.audio_bitrate == 240

    def test_lossless_bitrate_stays_zero(self):
        params = resolve_for_task(task(format="flac", quality="ultra"))
        assert params.audio_bitrate == 0

    def test_missing_preset_uses_unit_multiplier(self):
        params = resolve_encode_parameters(task(), FORMATS["mp4"], None)
        assert params.video_bitrate == 1200
        assert params.quality_factor == 23

    def test_resolution_is_pure(self):
        t = task(format="webm", quality="high")
        assert resolve_for_task(t) == resolve_for_task(t)

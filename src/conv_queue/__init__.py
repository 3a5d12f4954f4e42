"""Sequential media conversion queue with lifecycle notifications."""

from .bitrate import resolve_encode_parameters, resolve_for_task
from .catalog import FORMATS, QUALITY_PRESETS, lookup_format, lookup_quality
from .engine import EncodeRequest, EngineListener, EngineProgress, FfmpegEngine, TranscodingEngine
from .manager import QueueManager
from .metadata import FfprobeMetadataExtractor, MetadataExtractor
from .models import (
    ConversionTask,
    ConvQueueConfig,
    FormatConfig,
    JobState,
    ManagerState,
    MediaMetadata,
    MediaTags,
    QualityPreset,
    ResolvedEncodeParameters,
)
from .naming import job_hash, output_file_name
from .notifications import (
    CompletionInfo,
    HttpNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    ProgressInfo,
)
from .progress import estimate_progress

__all__ = [
    "FORMATS",
    "QUALITY_PRESETS",
    "CompletionInfo",
    "ConversionTask",
    "ConvQueueConfig",
    "EncodeRequest",
    "EngineListener",
    "EngineProgress",
    "FfmpegEngine",
    "FfprobeMetadataExtractor",
    "FormatConfig",
    "HttpNotificationSink",
    "JobState",
    "LoggingNotificationSink",
    "ManagerState",
    "MediaMetadata",
    "MediaTags",
    "MetadataExtractor",
    "NotificationSink",
    "ProgressInfo",
    "QualityPreset",
    "QueueManager",
    "ResolvedEncodeParameters",
    "TranscodingEngine",
    "estimate_progress",
    "job_hash",
    "lookup_format",
    "lookup_quality",
    "output_file_name",
    "resolve_encode_parameters",
    "resolve_for_task",
]

"""Pydantic models for configuration, tasks and job state."""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

QualityLevel = Literal["low", "medium", "high", "ultra"]


class ConversionTask(BaseModel):
    """A single requested conversion.

    Immutable once built. HTTP callers may use the camelCase field names
    (``inputFile``, ``videoBitrate`` ...); Python callers use snake_case.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    input_file: str = Field(
        ..., min_length=1, alias="inputFile", description="File name under <base_dir>/tmp"
    )
    format: str = Field(..., min_length=1, description="Target format id (catalog key)")
    size: Optional[str] = Field(
        default=None, description="Size or aspect constraint (e.g. 1280x720, ?x720, 50%, 16:9)"
    )
    quality: Optional[QualityLevel] = Field(
        default=None, description="Quality level; absent means medium"
    )
    video_codec: Optional[str] = Field(
        default=None, alias="videoCodec", description="Explicit video codec override"
    )
    audio_codec: Optional[str] = Field(
        default=None, alias="audioCodec", description="Explicit audio codec override"
    )
    video_bitrate: Optional[int] = Field(
        default=None, ge=0, alias="videoBitrate", description="Video bitrate override (kbps)"
    )
    audio_bitrate: Optional[int] = Field(
        default=None, ge=0, alias="audioBitrate", description="Audio bitrate override (kbps)"
    )

    @field_validator("input_file")
    @classmethod
    def no_path_traversal(cls, v: str) -> str:
        """Input files are names inside the tmp directory, not paths."""
        if v.startswith("/") or ".." in v.replace("\\", "/").split("/"):
            raise ValueError(f"input_file must be relative to the tmp directory: {v!r}")
        return v


class FormatConfig(BaseModel):
    """Default codecs and bitrates for an output format."""

    model_config = ConfigDict(frozen=True)

    video_codec: Optional[str] = Field(description="Video codec (None = audio-only output)")
    audio_codec: str = Field(description="Audio codec")
    video_bitrate: int = Field(ge=0, description="Default video bitrate (kbps, 0 = codec decides)")
    audio_bitrate: int = Field(ge=0, description="Default audio bitrate (kbps, 0 = lossless)")

    @property
    def audio_only(self) -> bool:
        return self.video_codec is None


class QualityPreset(BaseModel):
    """Bitrate multipliers and encoder effort for a quality level."""

    model_config = ConfigDict(frozen=True)

    video_multiplier: float = Field(gt=0.0)
    audio_multiplier: float = Field(gt=0.0)
    effort_preset: str = Field(description="ffmpeg -preset value")
    quality_factor: int = Field(ge=0, le=63, description="CRF, lower = higher quality")


class ResolvedEncodeParameters(BaseModel):
    """Final per-job encoder parameters. Computed once, never mutated."""

    model_config = ConfigDict(frozen=True)

    video_bitrate: int
    audio_bitrate: int
    quality_factor: int
    effort_preset: str
    video_codec: Optional[str]
    audio_codec: str
    container: str


class MediaTags(BaseModel):
    """Descriptive tags read from the input file."""

    title: str = ""
    album: str = ""
    artist: str = ""


class MediaMetadata(BaseModel):
    """Output of the metadata extractor."""

    duration: float = Field(default=0.0, ge=0.0, description="Stream duration in seconds")
    tags: MediaTags = Field(default_factory=MediaTags)


class JobState(str, Enum):
    """Per-job lifecycle.

    State transitions:
        resolving → encoding     (engine invoked)
        resolving → skipped      (input missing)
        resolving → failed       (invalid task, metadata or setup failure)
        encoding  → completed    (engine end signal)
        encoding  → failed       (engine error signal)
    """

    RESOLVING = "resolving"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.SKIPPED)


class ManagerState(str, Enum):
    """Queue manager state. HALTED only occurs with halt_on_failure."""

    IDLE = "idle"
    RESOLVING = "resolving"
    ENCODING = "encoding"
    HALTED = "halted"


# ----------------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------------


class QueueConfig(BaseModel):
    """Queue manager behaviour."""

    base_dir: str = Field(default="./data", description="Working directory holding tmp/ and converted/")
    halt_on_failure: bool = Field(
        default=False,
        description="Fail closed: stop the queue on missing input or setup failure",
    )
    strict_formats: bool = Field(
        default=False, description="Fail jobs whose format is not in the catalog"
    )
    progress_formula: Literal["ratio", "legacy"] = Field(
        default="ratio", description="Progress percentage formula"
    )


class EngineConfig(BaseModel):
    """ffmpeg/ffprobe invocation settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = imageio-ffmpeg bundled binary)"
    )
    ffprobe_path: Optional[str] = Field(
        default=None, description="ffprobe executable (None = PATH, then next to ffmpeg)"
    )
    hw_accel: Optional[str] = Field(
        default=None, description="ffmpeg -hwaccel method (e.g. cuda, vaapi, auto)"
    )
    faststart: bool = Field(
        default=True, description="Add -movflags +faststart for streamable containers"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    probe_timeout_s: int = Field(default=30, gt=0, description="ffprobe timeout in seconds")


class NotificationConfig(BaseModel):
    """Where lifecycle events go."""

    api_url: Optional[str] = Field(
        default=None, description="Listener base URL (None = log events only)"
    )
    timeout_s: float = Field(default=5.0, gt=0.0, description="HTTP timeout per event")
    log_events: bool = Field(default=True, description="Also log every event")


class ServerConfig(BaseModel):
    """HTTP API and access URL settings."""

    host: str = Field(default="0.0.0.0", description="Bind address for the API server")
    port: int = Field(default=8080, gt=0, lt=65536)
    host_address: Optional[str] = Field(
        default=None, description="Address used in access URLs (None = discover)"
    )
    public_url: Optional[str] = Field(
        default=None, description="Full base URL for access URLs, overrides host_address/port"
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class ConvQueueConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ConvQueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ConvQueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "base_dir" in cli_args:
            config_dict["queue"]["base_dir"] = cli_args["base_dir"]
        if "halt_on_failure" in cli_args:
            config_dict["queue"]["halt_on_failure"] = cli_args["halt_on_failure"]
        if "progress_formula" in cli_args:
            config_dict["queue"]["progress_formula"] = cli_args["progress_formula"]
        if "api_url" in cli_args:
            config_dict["notifications"]["api_url"] = cli_args["api_url"]
        if "hw_accel" in cli_args:
            config_dict["engine"]["hw_accel"] = cli_args["hw_accel"]
        if "port" in cli_args:
            config_dict["server"]["port"] = cli_args["port"]
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"].upper()

        return ConvQueueConfig.from_dict(config_dict)

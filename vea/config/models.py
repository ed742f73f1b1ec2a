import os
import socket
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_EXTENSIONS = [".ts", ".m2ts", ".mkv", ".mp4", ".avi"]


class GeneralConfig(BaseModel):
    storage_dir: Path = Path("encode")
    staging_dir: Path = Path("work")
    watch_dirs: List[Path] = Field(default_factory=list)  # empty = <storage_dir>/in
    scan_staging: bool = True
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    output_extension: str = ".mkv"
    machine_name: Optional[str] = None
    recent_tasks_max: int = Field(default=50, ge=1)
    debug: bool = False
    log_path: Optional[str] = None

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        normalized = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        if not normalized:
            raise ValueError("extensions must contain at least one entry")
        return normalized

    @field_validator("output_extension")
    @classmethod
    def normalize_output_extension(cls, v: str) -> str:
        v = v.strip().lower()
        return v if v.startswith(".") else f".{v}"

    @property
    def input_dir(self) -> Path:
        return self.storage_dir / "in"

    @property
    def output_dir(self) -> Path:
        return self.storage_dir / "out"

    @property
    def failure_dir(self) -> Path:
        return self.storage_dir / "fail"

    @property
    def staging_input_dir(self) -> Path:
        return self.staging_dir / "in"

    @property
    def staging_output_dir(self) -> Path:
        return self.staging_dir / "out"

    @property
    def records_dir(self) -> Path:
        return self.staging_dir / "records"

    def resolved_machine_name(self) -> str:
        return self.machine_name or socket.gethostname()

    def watch_roots(self) -> List[Path]:
        """Watched roots in scan order: local staging first, then shared inputs."""
        roots: List[Path] = []
        if self.scan_staging:
            roots.append(self.staging_input_dir)
        roots.extend(self.watch_dirs or [self.input_dir])
        return roots


class ToolsConfig(BaseModel):
    handbrake: str = "HandBrakeCLI"
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"


class SchedulerConfig(BaseModel):
    per_file_delay_s: float = Field(default=15.0, ge=0)
    min_delay_s: float = Field(default=15.0, ge=0)
    max_delay_s: float = Field(default=120.0, ge=0)
    error_backoff_s: float = Field(default=60.0, ge=0)
    idle_poll_s: float = Field(default=1.0, gt=0)
    pause_poll_s: float = Field(default=0.25, gt=0)

    @model_validator(mode="after")
    def validate_delay_range(self):
        if self.max_delay_s < self.min_delay_s:
            raise ValueError("max_delay_s must be >= min_delay_s")
        return self


class LockConfig(BaseModel):
    suffix: str = ".lock"
    grace_period_s: float = Field(default=5.0, ge=0)

    @field_validator("suffix")
    @classmethod
    def validate_suffix(cls, v: str) -> str:
        if not v or not v.startswith("."):
            raise ValueError("lock suffix must start with '.'")
        return v


class StagingConfig(BaseModel):
    writable_timeout_s: float = Field(default=30.0, ge=0)
    poll_interval_s: float = Field(default=5.0, gt=0)
    max_requeues: Optional[int] = Field(default=None, ge=0)  # None = unlimited


class EncodeConfig(BaseModel):
    poll_interval_s: float = Field(default=0.5, gt=0, le=1.0)
    stream_join_timeout_s: float = Field(default=5.0, ge=0)
    below_normal_priority: bool = True


class CropConfig(BaseModel):
    """Smart crop sampling configuration."""
    capture_interval_s: int = Field(default=20, gt=0)
    minimum_captures: int = Field(default=60, ge=0)
    lossless: bool = True
    max_threads: Optional[int] = Field(default=None, ge=1)  # None = cpu_count // 3
    queue_size: int = Field(default=8, ge=1)
    snapshot_timeout_s: float = Field(default=120.0, gt=0)
    debug_frames_dir: Optional[Path] = None

    def resolved_threads(self) -> int:
        if self.max_threads:
            return self.max_threads
        return max(1, (os.cpu_count() or 1) // 3)


class WebConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=14580, ge=0, le=65535)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    locking: LockConfig = Field(default_factory=LockConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    encode: EncodeConfig = Field(default_factory=EncodeConfig)
    crop: CropConfig = Field(default_factory=CropConfig)
    web: WebConfig = Field(default_factory=WebConfig)

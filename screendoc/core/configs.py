"""Configuration management for screendoc."""

import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from .backends import CaptureKind


class CaptureConfig(BaseModel):
    """Source selection and capture cadence."""
    model_config = {"validate_assignment": True}

    backend: Literal["mss", "adb", "synthetic"] = "mss"
    source_kind: CaptureKind = CaptureKind.SCREEN
    monitor: int = Field(default=1, ge=1, description="Monitor index for the mss backend")
    region: Optional[List[int]] = Field(default=None, description="Capture area [x, y, w, h] within the monitor")
    adb_serial: str = "127.0.0.1:5555"
    interval_sec: float = Field(default=2.0, ge=1.0, le=60.0, description="Seconds between screenshots")
    preview_interval_ms: int = Field(default=500, ge=100, le=10000, description="Preview refresh cadence")
    frame_quality: float = Field(default=0.8, gt=0.0, le=1.0, description="JPEG quality of grabbed frames")
    ideal_width: int = Field(default=1920, ge=100, le=10000)
    ideal_height: int = Field(default=1080, ge=100, le=10000)
    max_frame_rate: float = Field(default=15.0, gt=0.0, le=15.0, description="Cap on device frame rate")
    allow_fallback: bool = True
    realtime_analysis: bool = False
    serialize_persistence: bool = False

    @field_validator('region')
    @classmethod
    def validate_region(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        """Validate region is [x, y, w, h] with a positive size."""
        if v is None:
            return v
        if len(v) != 4:
            raise ValueError("Region must have exactly 4 values [x, y, w, h]")
        x, y, w, h = v
        if x < 0 or y < 0:
            raise ValueError(f"Region origin must be non-negative, got ({x}, {y})")
        if w <= 0 or h <= 0:
            raise ValueError(f"Region size must be positive, got {w}x{h}")
        return v

    @property
    def region_tuple(self) -> Optional[tuple[int, int, int, int]]:
        return tuple(self.region) if self.region is not None else None  # type: ignore[return-value]


class CompressionConfig(BaseModel):
    """Byte budgets for screenshots and thumbnails."""
    target_bytes: int = Field(default=1024 * 1024, ge=1024, description="Byte budget per screenshot")
    min_quality: float = Field(default=0.3, gt=0.0, le=1.0)
    max_attempts: int = Field(default=5, ge=1, le=20)
    start_quality: float = Field(default=0.75, gt=0.0, le=1.0)
    thumbnail_max_dimension: int = Field(default=200, ge=16, le=2000)
    thumbnail_target_bytes: int = Field(default=50 * 1024, ge=1024)
    thumbnail_quality: float = Field(default=0.6, gt=0.0, le=1.0)

    @model_validator(mode='after')
    def check_quality_range(self) -> "CompressionConfig":
        if self.min_quality > self.start_quality:
            raise ValueError("min_quality must not exceed start_quality")
        return self


class CacheConfig(BaseModel):
    """In-memory screenshot cache."""
    capacity: int = Field(default=30, ge=1, le=10000, description="Maximum full-size images held in memory")
    thumbnail_capacity: Optional[int] = Field(default=None, ge=1, le=100000)
    derive_thumbnails: bool = True


class LLMConfig(BaseModel):
    """Vision model configuration."""
    provider: Literal["gemini"] = "gemini"
    model: str = "gemini-1.5-flash-latest"
    api_key_env: str = "GEMINI_API_KEY"
    max_tokens: int = Field(default=1024, ge=100, le=100000, description="Maximum tokens for LLM response")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="LLM temperature for response generation")
    max_retries: int = Field(default=3, ge=1, le=10)
    prompt: str = (
        "Describe what the user is doing in this screenshot in one or two sentences. "
        "Name the application and the action taken."
    )


class DataConfig(BaseModel):
    """Screenshot archive configuration."""
    base_dir: str = "~/.screendoc"
    max_files_per_session: int = Field(default=2000, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[str] = None


class AppConfig(BaseModel):
    """Main application configuration."""
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def data_dir(self) -> Path:
        """Get expanded data directory path."""
        return Path(self.data.base_dir).expanduser()

    @property
    def llm_api_key(self) -> str:
        """Get LLM API key from environment."""
        key = os.getenv(self.llm.api_key_env)
        if not key:
            raise ValueError(f"LLM API key not found in environment variable: {self.llm.api_key_env}")
        return key


def load_config(config_path: str | Path) -> AppConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration YAML file

    Returns:
        Parsed configuration object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If YAML parsing or validation fails, with field-level details
    """
    # Load .env file if present
    load_dotenv(verbose=False)

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create it from the example: cp {config_path.parent}/app.yaml.example {config_path}"
        )

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML configuration file {config_path}: {e}")

    if config_data is None:
        raise ValueError(f"Configuration file {config_path} is empty")

    try:
        return AppConfig(**config_data)
    except Exception as e:
        error_msg = f"Configuration validation failed for {config_path}:\n"

        if hasattr(e, 'errors'):
            for err in e.errors():  # type: ignore[attr-defined]
                field_path = ' -> '.join(str(loc) for loc in err['loc'])
                error_msg += f"  - Field '{field_path}': {err['msg']}\n"
                if 'input' in err:
                    error_msg += f"    Got value: {err['input']}\n"
        else:
            error_msg += f"  {str(e)}\n"

        raise ValueError(error_msg) from e


def create_default_config() -> AppConfig:
    """Create default configuration."""
    return AppConfig()


def save_config(config: AppConfig, config_path: str | Path) -> None:
    """Save configuration to YAML file.

    Args:
        config: Configuration object to save
        config_path: Path where to save the configuration
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump(mode="json")

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config_dict, f, default_flow_style=False, indent=2)

"""
Configuration loader for the photo frame compositing service.

Every tunable (canvas geometry, normalization bounds, retry policy, collaborator
URLs, R2 credentials) is read from the environment or `.env` here.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_FORMATS = {"JPEG", "PNG", "WEBP"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Normalization of captured photos
    max_upload_bytes: int = Field(10 * 1024 * 1024, gt=0)
    normalize_max_width: int = Field(1920, gt=0)
    normalize_max_height: int = Field(1080, gt=0)
    normalize_quality: float = 0.8
    normalize_format: str = "JPEG"

    # Compositing canvas
    canvas_width: int = Field(800, gt=0)
    canvas_height: int = Field(600, gt=0)
    canvas_background: str = "#ffffff"
    export_multiplier: float = Field(2.0, gt=0)
    composite_format: str = "PNG"
    default_subject_scale: float = Field(0.8, gt=0)
    default_offset_x: float = 50.0
    default_offset_y: float = 50.0

    # Upload queue
    upload_max_retries: int = Field(3, ge=1)
    upload_backoff_seconds: float = Field(1.0, ge=0)

    # Collaborators
    remote_composite_url: Optional[str] = None
    remote_timeout_seconds: float = 30.0
    asset_timeout_seconds: float = 15.0
    connectivity_probe_url: Optional[str] = None
    connectivity_probe_interval: float = 5.0
    delivery_record_url: Optional[str] = None
    frames_catalog_path: Optional[Path] = None
    frames_catalog_url: Optional[str] = None

    # Cloudflare R2 / S3-compatible storage
    storage_key_prefix: str = "deliveries"
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: Optional[str] = None
    r2_public_base_url: Optional[str] = None

    # API
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/photoframe_debug")

    @field_validator("normalize_format", "composite_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        v = v.upper()
        if v == "JPG":
            v = "JPEG"
        if v not in SUPPORTED_FORMATS:
            raise ValueError(f"image format must be one of {'|'.join(sorted(SUPPORTED_FORMATS))}")
        return v

    @field_validator("canvas_background")
    @classmethod
    def validate_background(cls, v: str) -> str:
        if parse_hex_color(v) is None:
            raise ValueError("CANVAS_BACKGROUND must be a #RRGGBB color")
        return v

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return self.canvas_width, self.canvas_height

    @property
    def background_rgb(self) -> Tuple[int, int, int]:
        return parse_hex_color(self.canvas_background) or (255, 255, 255)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def parse_hex_color(value: Optional[str]) -> Optional[Tuple[int, int, int]]:
    if not value:
        return None
    raw = value.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) != 6:
        return None
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError:
        return None


def normalize_quality(quality: float) -> int:
    """
    Translate a quality setting into Pillow's 1-100 encoder scale.

    Accepts either a 0-1 fraction (browser canvas style) or a 1-100 value.
    """
    quality = float(quality)
    if quality <= 1.0:
        quality = quality * 100.0
    return int(min(max(round(quality), 1), 100))

"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///renderflow.db"
    artifacts_dir: Path = Path("artifacts")
    music_library_dir: Path = Path("assets/music")

    @field_validator("artifacts_dir", "music_library_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class RenderConfig(BaseModel):
    """Render mode flags.

    dry_run substitutes placeholder artifacts for every paid call and skips
    media composition. dry_run_fail_step and dry_run_step_delay_ms only take
    effect while dry_run is on. test_mode disables rendering entirely.
    """

    dry_run: bool = False
    dry_run_fail_step: str = ""
    dry_run_step_delay_ms: int = 0
    test_mode: bool = False


class QaConfig(BaseModel):
    """Objective checks applied to the final MP4."""

    max_file_size_mb: float = 287.0
    required_width: int = 1080
    required_height: int = 1920
    max_silence_seconds: float = 2.0
    silence_noise_db: int = -50


class ProvidersConfig(BaseModel):
    """Speech, transcription, image and text provider settings."""

    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    tts_model: str = "tts-1"
    tts_voice: str = "alloy"
    transcription_model: str = "whisper-1"
    image_model: str = "dall-e-3"
    image_size: str = "1024x1792"
    chat_model: str = "gpt-4o-mini"
    request_timeout: float = 120.0
    retry_max_attempts: int = 4


class CaptionStyleConfig(BaseModel):
    """Default ASS caption style used when a niche pack does not override it."""

    font_family: str = "Arial Black"
    font_size: int = 48
    primary_color: str = "#FFFFFF"
    outline_color: str = "#000000"
    outline_width: int = 4
    highlight_color: str = "#FFD700"
    margin_bottom: int = 200
    margin_horizontal: int = 40


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: RENDERFLOW_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="RENDERFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    render: RenderConfig = Field(default_factory=RenderConfig)
    qa: QaConfig = Field(default_factory=QaConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    captions: CaptionStyleConfig = Field(default_factory=CaptionStyleConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit overrides, used by tests)
        2. Environment variables
        3. .env file
        4. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()

import json
import logging
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DisplaySettings(BaseModel):
    """Layout settings forwarded verbatim to the display client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    grid_width: int
    grid_height: int
    margin: int
    gap: int
    border_width: int
    border_radius: int
    bib_font_size: str
    leg_font_size: str
    font_family: str
    font_weight: str
    bib_text_color: List[str]
    bg_color: List[str]
    controls: List[str]


class AppSettings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    # Timing feed
    feed_host: str = Field(
        "localhost:2009",
        description="Host (and port) of the MeOS information server.",
    )
    feed_path: str = Field("meos", description="Path of the feed endpoint.")
    controls: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["200"],
        description="Radio control ids whose punches are announced, comma-separated or a JSON list.",
    )
    poll_interval_seconds: float = Field(
        5.0, gt=0, description="Seconds between two poll cycles."
    )
    request_timeout_seconds: float = Field(
        30.0, gt=0, description="Timeout for a single feed request."
    )
    feed_log_dir: Optional[Path] = Field(
        Path("logs"),
        description="Directory raw feed payloads are written to. Empty disables.",
    )

    # Display push server
    server_host: str = Field("0.0.0.0", description="Bind address of the push server.")
    server_port: int = Field(3001, description="Port of the push server.")

    # Display client layout
    grid_width: int = 4
    grid_height: int = 4
    margin: int = 10
    gap: int = 10
    border_width: int = 5
    border_radius: int = 5
    bib_font_size: str = "150pt"
    leg_font_size: str = "36pt"
    font_family: str = "Arial,sans-serif"
    font_weight: str = "normal"
    bib_text_color: List[str] = Field(
        default_factory=lambda: ["black", "red", "black"],
        description="Bib text color per leg.",
    )
    bg_color: List[str] = Field(
        default_factory=lambda: ["white", "white", "yellow"],
        description="Tile background color per leg.",
    )

    # Logging Configuration
    log_level: str = Field(
        "INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."
    )

    # Pydantic Settings Configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("controls", mode="before")
    @classmethod
    def _controls_as_strings(cls, value):
        # Control ids may arrive as numbers but are compared as strings.
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                value = json.loads(value)
            else:
                value = [control.strip() for control in value.split(",") if control.strip()]
        elif isinstance(value, int):
            value = [value]
        return [str(control) for control in value]

    @field_validator("feed_log_dir", mode="before")
    @classmethod
    def _empty_log_dir_disables(cls, value):
        if value == "":
            return None
        return value

    def display_settings(self) -> DisplaySettings:
        return DisplaySettings(
            grid_width=self.grid_width,
            grid_height=self.grid_height,
            margin=self.margin,
            gap=self.gap,
            border_width=self.border_width,
            border_radius=self.border_radius,
            bib_font_size=self.bib_font_size,
            leg_font_size=self.leg_font_size,
            font_family=self.font_family,
            font_weight=self.font_weight,
            bib_text_color=self.bib_text_color,
            bg_color=self.bg_color,
            controls=self.controls,
        )


def load_settings() -> AppSettings:
    """Loads and validates application settings."""
    try:
        settings = AppSettings()
        log_level_upper = settings.log_level.upper()
        # Validate log_level even if loaded from .env
        if log_level_upper not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            logging.warning(
                f"Invalid LOG_LEVEL '{settings.log_level}' found in .env or default. Using INFO."
            )
            settings.log_level = "INFO"
        else:
            settings.log_level = log_level_upper
        return settings
    except Exception as e:
        logging.exception(f"Error loading application settings: {e}")
        raise SystemExit("Failed to load application settings. Exiting.")


settings: AppSettings = load_settings()

"""Server configuration: packaged YAML defaults plus environment overrides."""

import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from forkchat.models import THINKING_PLACEHOLDER, Position

DEFAULTS_PATH = Path(__file__).parent / "defaults.yml"

# Environment variable -> settings field
_ENV_OVERRIDES = {
    "FORKCHAT_PROVIDER": "provider",
    "FORKCHAT_MODEL": "model",
    "FORKCHAT_SYSTEM_PROMPT": "system_prompt",
    "FORKCHAT_STREAM_TIMEOUT": "stream_chunk_timeout",
    "FORKCHAT_LOG_LEVEL": "log_level",
    "FORKCHAT_CORS_ORIGINS": "cors_origins",
}


class LayoutSettings(BaseModel):
    root_position: Position = Field(default_factory=lambda: Position(x=400, y=200))
    branch_offset: Position = Field(default_factory=lambda: Position(x=0, y=28))
    follow_up_gap: float = 28


class Settings(BaseModel):
    provider: str = "xai"
    model: str | None = None
    system_prompt: str | None = None
    invitation_message: str = "What are you curious about today?"
    thinking_placeholder: str = THINKING_PLACEHOLDER
    error_message: str = "Something went wrong while generating a response: {error}"
    stream_chunk_timeout: float | None = 120
    layout: LayoutSettings = Field(default_factory=LayoutSettings)
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    @property
    def chunk_timeout(self) -> float | None:
        """Per-chunk stream timeout in seconds, or None when disabled."""
        if not self.stream_chunk_timeout:
            return None
        return self.stream_chunk_timeout


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Read YAML defaults, then apply FORKCHAT_* environment overrides."""
    path = path or DEFAULTS_PATH
    environ = os.environ if environ is None else environ

    data: dict = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

    for var, field_name in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        if field_name == "cors_origins":
            data[field_name] = [o.strip() for o in value.split(",") if o.strip()]
        else:
            data[field_name] = value

    return Settings.model_validate(data)

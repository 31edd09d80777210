"""
Configuration

Runtime settings read from HETU_* environment variables.
"""

import os
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from .discovery import default_search_paths

DEFAULT_GREETING = "Hi, I'm Hetu. I'm here to listen. How are you feeling today?"
DEFAULT_PLACEHOLDER_REPLY = "Please load a model in Settings to start chatting."

ENV_PREFIX = "HETU_"


class Settings(BaseModel):
    """Settings for discovery, generation and the HTTP service."""
    search_paths: List[str] = Field(default_factory=default_search_paths)
    greeting: str = DEFAULT_GREETING
    placeholder_reply: str = DEFAULT_PLACEHOLDER_REPLY
    device: Literal["auto", "cpu", "cuda"] = "auto"
    max_new_tokens: int = Field(512, gt=0)
    temperature: float = Field(0.7, ge=0.0)
    top_p: float = Field(0.9, gt=0.0, le=1.0)
    host: str = "0.0.0.0"
    port: int = Field(8000, gt=0, lt=65536)
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment; unset variables keep their defaults."""
    if environ is None:
        environ = os.environ

    values: Dict[str, object] = {}
    for field_name in Settings.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if raw is None or raw == "":
            continue
        if field_name == "search_paths":
            values[field_name] = [p for p in raw.split(os.pathsep) if p]
        else:
            values[field_name] = raw

    return Settings(**values)

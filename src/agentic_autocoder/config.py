"""Configuration loading for the autocoder CLI."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from agentic_autocoder.constants import (
    DEFAULT_DIAGNOSIS_MODEL,
    DEFAULT_PLANNER_MODEL,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_STEP_MODEL,
    MAX_RETRIES,
    RETRY_DELAY_S,
    STEP_DELAY_S,
)


@dataclass
class Config:
    """Application configuration loaded from environment."""
    
    openrouter_api_key: Optional[str]
    workspace_root: Path
    planner_model: str = DEFAULT_PLANNER_MODEL
    step_model: str = DEFAULT_STEP_MODEL
    diagnosis_model: str = DEFAULT_DIAGNOSIS_MODEL
    max_retries: int = MAX_RETRIES
    retry_delay_s: float = RETRY_DELAY_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    step_delay_s: float = STEP_DELAY_S


class ConfigError(Exception):
    """Raised when required configuration is missing or malformed."""
    pass


def _read_number(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got: {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got: {raw!r}")
    return value


def load_config(
    require_api_key: bool = True,
    workspace_root: Optional[str] = None,
) -> Config:
    """
    Load configuration from environment variables (and .env).
    
    Args:
        require_api_key: If True, raises ConfigError when OPENROUTER_API_KEY is missing.
        workspace_root: Explicit workspace root; overrides AUTOCODER_WORKSPACE.
    
    Returns:
        Config object.
    
    Raises:
        ConfigError: If the API key is required but missing, the workspace
            does not exist, or a numeric setting is malformed.
    """
    load_dotenv()
    
    api_key = os.environ.get("OPENROUTER_API_KEY")
    if require_api_key and not api_key:
        raise ConfigError(
            "Missing required environment variable: OPENROUTER_API_KEY\n"
            "Please set it in your environment or create a .env file.\n"
            "See .env.example for the required format."
        )
    
    root = Path(workspace_root or os.environ.get("AUTOCODER_WORKSPACE") or os.getcwd())
    root = root.expanduser().resolve()
    if not root.is_dir():
        raise ConfigError(f"Workspace root is not a directory: {root}")
    
    max_retries = _read_number("AUTOCODER_MAX_RETRIES", MAX_RETRIES, int)
    if max_retries < 1:
        raise ConfigError("AUTOCODER_MAX_RETRIES must be at least 1")
    
    return Config(
        openrouter_api_key=api_key,
        workspace_root=root,
        planner_model=os.environ.get("AUTOCODER_PLANNER_MODEL", DEFAULT_PLANNER_MODEL),
        step_model=os.environ.get("AUTOCODER_STEP_MODEL", DEFAULT_STEP_MODEL),
        diagnosis_model=os.environ.get("AUTOCODER_DIAGNOSIS_MODEL", DEFAULT_DIAGNOSIS_MODEL),
        max_retries=max_retries,
        retry_delay_s=_read_number("AUTOCODER_RETRY_DELAY_S", RETRY_DELAY_S, float),
        request_timeout_s=_read_number(
            "AUTOCODER_REQUEST_TIMEOUT_S", DEFAULT_REQUEST_TIMEOUT_S, float
        ),
        step_delay_s=_read_number("AUTOCODER_STEP_DELAY_S", STEP_DELAY_S, float),
    )

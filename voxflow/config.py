"""
Configuration for voxflow.

Settings live in ~/.voxflow/settings.json (camelCase keys, shared with the
settings UI). Anything missing falls back to environment variables (a .env
file is honoured) and then to the defaults below.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from voxflow.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

# ============================================================================
# Configuration Constants
# ============================================================================

SOCKET_PATH = "/tmp/voxflow.sock"
PID_FILE = "/tmp/voxflow.pid"

# Audio configuration
SAMPLE_RATE = 16000  # 16kHz sample rate (Whisper requirement)
AUDIO_CHANNELS = 1  # Mono audio
SILENCE_THRESHOLD = 0.01  # RMS at or below this counts as silence
DEFAULT_SILENCE_DURATION = 1.5  # Seconds of silence after speech before auto-stop

# LLM correction
CORRECTION_TIMEOUT = 10.0
CORRECTION_TEMPERATURE = 0.3
MIN_CORRECTION_TOKENS = 200
DEFAULT_LLM_ENDPOINT = "https://api.openai.com"
DEFAULT_LLM_MODEL = "gpt-4o-mini"

# Whisper model
MODEL_REPO_ID = "ggerganov/whisper.cpp"
MODEL_REVISION = "main"
DEFAULT_WHISPER_MODEL = "large-v3-turbo"
HUB_URL = "https://huggingface.co"

# Status panel stays up this long after a model error
ERROR_DISPLAY_SECONDS = 2.0

# Trigger modifier bits
MOD_SHIFT = 1
MOD_CTRL = 2
MOD_ALT = 4
MOD_CMD = 8

# Default trigger: Ctrl + / (X11 keysym for slash)
DEFAULT_TRIGGER_KEY_CODE = 47
DEFAULT_TRIGGER_MODIFIERS = MOD_CTRL

# File paths
DATA_DIR = Path.home() / ".voxflow"
SETTINGS_FILE = DATA_DIR / "settings.json"
MODELS_DIR = DATA_DIR / "models"

DEBUG_MODE = os.getenv("DEBUG_MODE", "false").lower() == "true"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() == "true"


@dataclass
class Settings:
    """Read-only configuration surface consumed by the core."""

    trigger_key_code: int = DEFAULT_TRIGGER_KEY_CODE
    trigger_modifier_flags: int = DEFAULT_TRIGGER_MODIFIERS
    silence_duration_seconds: float = DEFAULT_SILENCE_DURATION
    custom_model_folder: str | None = None
    llm_endpoint: str = DEFAULT_LLM_ENDPOINT
    llm_api_key: str = ""
    llm_model: str = DEFAULT_LLM_MODEL
    is_llm_correction_enabled: bool = True
    whisper_model: str = DEFAULT_WHISPER_MODEL
    input_device: int | str | None = None

    @property
    def model_marker(self) -> str:
        """File whose presence means the model is downloaded."""
        return f"ggml-{self.whisper_model}.bin"

    def to_json(self) -> dict:
        data = asdict(self)
        return {
            "triggerKeyCode": data["trigger_key_code"],
            "triggerModifierFlags": data["trigger_modifier_flags"],
            "silenceDuration": data["silence_duration_seconds"],
            "customModelFolder": data["custom_model_folder"] or "",
            "llmEndpoint": data["llm_endpoint"],
            "llmApiKey": data["llm_api_key"],
            "llmModel": data["llm_model"],
            "isLLMCorrectionEnabled": data["is_llm_correction_enabled"],
            "whisperModel": data["whisper_model"],
            "inputDevice": data["input_device"],
        }


def default_settings() -> Settings:
    """Settings built from environment variables only."""
    return Settings(
        custom_model_folder=os.getenv("VOXFLOW_MODEL_FOLDER") or None,
        llm_endpoint=os.getenv("VOXFLOW_LLM_ENDPOINT", DEFAULT_LLM_ENDPOINT),
        llm_api_key=os.getenv("VOXFLOW_LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "",
        llm_model=os.getenv("VOXFLOW_LLM_MODEL", DEFAULT_LLM_MODEL),
        is_llm_correction_enabled=_env_flag("VOXFLOW_LLM_CORRECTION", True),
        whisper_model=os.getenv("VOXFLOW_WHISPER_MODEL", DEFAULT_WHISPER_MODEL),
    )


def _positive(value, fallback):
    try:
        return value if value is not None and value > 0 else fallback
    except TypeError:
        return fallback


def ensure_data_dir() -> None:
    """Ensure ~/.voxflow and the model cache directory exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    MODELS_DIR.mkdir(parents=True, exist_ok=True)


def load_settings(path: Path = SETTINGS_FILE) -> Settings:
    """
    Load settings from the JSON settings file.

    Falls back to environment variable defaults for missing keys, and to the
    environment defaults entirely if the file is missing or unreadable.
    """
    defaults = default_settings()

    try:
        if not path.exists():
            return defaults
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Settings file is invalid JSON: {e}")
        return defaults
    except Exception as e:
        logger.warning(f"Failed to load settings from {path}: {e}")
        return defaults

    return Settings(
        trigger_key_code=_positive(data.get("triggerKeyCode"), defaults.trigger_key_code),
        trigger_modifier_flags=_positive(
            data.get("triggerModifierFlags"), defaults.trigger_modifier_flags
        ),
        silence_duration_seconds=_positive(
            data.get("silenceDuration"), defaults.silence_duration_seconds
        ),
        custom_model_folder=data.get("customModelFolder") or defaults.custom_model_folder,
        llm_endpoint=data.get("llmEndpoint") or defaults.llm_endpoint,
        llm_api_key=data.get("llmApiKey") or defaults.llm_api_key,
        llm_model=data.get("llmModel") or defaults.llm_model,
        is_llm_correction_enabled=data.get(
            "isLLMCorrectionEnabled", defaults.is_llm_correction_enabled
        ),
        whisper_model=data.get("whisperModel") or defaults.whisper_model,
        input_device=data.get("inputDevice", defaults.input_device),
    )


def save_settings(settings: Settings, path: Path = SETTINGS_FILE) -> None:
    """Write settings to the JSON settings file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(settings.to_json(), f, indent=2)


def validate_configuration(settings: Settings) -> None:
    """
    Validate application configuration.

    Missing LLM credentials only produce a warning since correction is
    optional; malformed values that would fail every session are errors.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    endpoint = urlparse(settings.llm_endpoint)
    if endpoint.scheme not in ("http", "https") or not endpoint.netloc:
        raise ConfigurationError(
            f"Invalid LLM endpoint: {settings.llm_endpoint!r} (expected http(s)://host)"
        )

    if settings.custom_model_folder and not Path(settings.custom_model_folder).is_dir():
        raise ConfigurationError(
            f"Custom model folder does not exist: {settings.custom_model_folder}"
        )

    if settings.is_llm_correction_enabled and not settings.llm_api_key:
        logger.warning(
            "LLM correction is enabled but no API key is configured. "
            "Set llmApiKey in settings.json or VOXFLOW_LLM_API_KEY; "
            "raw transcriptions will be committed."
        )

    logger.info("Configuration validated successfully")

"""
Configuration for the symptom intake service.

Two kinds of settings live here:
- Interview constants: fixed by the product, never read from the environment
- AppConfig: deployment settings loaded from environment / .env

Usage:
    from intake.config import load_config, TOTAL_QUESTIONS
    config = load_config()
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent.parent

# Interview shape
TOTAL_QUESTIONS = 15
QUESTIONS_PER_PHASE = 5
NUMBER_OF_PHASES = 3

# Sliding session lifetime
SESSION_TTL = timedelta(hours=1)

# How long a completed interview's final answer + artifact are kept for retries
RESULT_RETENTION = timedelta(minutes=5)

# Input bounds
MAX_SYMPTOMS_LENGTH = 1000
MAX_RECOMMENDATION_LENGTH = 10000
MIN_PAGE_NUMBER = 1
MIN_PAGE_LIMIT = 1
MAX_PAGE_LIMIT = 50

SESSION_BACKENDS = ("memory", "file")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class AppConfig:
    model_name: str = "mistralai/Mistral-7B-Instruct-v0.2"
    load_in_4bit: bool = True
    device: str = "cuda"
    oracle_timeout_seconds: float = 120.0
    oracle_max_tokens: int = 1024
    session_backend: str = "memory"
    session_dir: Path = BASE_DIR / "outputs" / "sessions"
    recommendations_dir: Path = BASE_DIR / "outputs" / "recommendations"
    sweep_interval_seconds: int = 300
    secret_key: str = "symptom-intake-dev-key"
    log_level: str = "INFO"


def _resolve_path(raw_path: str, default_path: Path) -> Path:
    if not raw_path:
        return default_path
    path = Path(raw_path).expanduser()
    if path.is_absolute():
        return path
    return (BASE_DIR / path).resolve()


def _parse_bool(name: str, raw: str, default: bool) -> bool:
    if not raw:
        return default
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean (true/false), got '{raw}'")


def load_config() -> AppConfig:
    """
    Build AppConfig from the environment.

    Returns:
        AppConfig: Validated settings

    Raises:
        ConfigError: If any value is out of range or has the wrong type
    """
    load_dotenv()
    defaults = AppConfig()

    model_name = os.getenv("MODEL_NAME", "").strip() or defaults.model_name
    device = os.getenv("DEVICE", "").strip().lower() or defaults.device
    if device not in ("cuda", "cpu"):
        raise ConfigError("DEVICE must be 'cuda' or 'cpu'")

    load_in_4bit = _parse_bool("LOAD_IN_4BIT", os.getenv("LOAD_IN_4BIT", "").strip(), defaults.load_in_4bit)

    try:
        oracle_timeout = float(os.getenv("ORACLE_TIMEOUT_SECONDS", str(defaults.oracle_timeout_seconds)))
        if oracle_timeout <= 0:
            raise ValueError
    except ValueError as exc:
        raise ConfigError("ORACLE_TIMEOUT_SECONDS must be a positive number") from exc

    try:
        oracle_max_tokens = int(os.getenv("ORACLE_MAX_TOKENS", str(defaults.oracle_max_tokens)))
        if oracle_max_tokens < 64:
            raise ValueError
    except ValueError as exc:
        raise ConfigError("ORACLE_MAX_TOKENS must be an integer >= 64") from exc

    session_backend = os.getenv("SESSION_BACKEND", "").strip().lower() or defaults.session_backend
    if session_backend not in SESSION_BACKENDS:
        raise ConfigError(f"SESSION_BACKEND must be one of {SESSION_BACKENDS}")

    try:
        sweep_interval = int(os.getenv("SWEEP_INTERVAL_SECONDS", str(defaults.sweep_interval_seconds)))
        if sweep_interval < 1:
            raise ValueError
    except ValueError as exc:
        raise ConfigError("SWEEP_INTERVAL_SECONDS must be a positive integer") from exc

    log_level = os.getenv("LOG_LEVEL", "").strip().upper() or defaults.log_level
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"LOG_LEVEL '{log_level}' is not a logging level")

    return AppConfig(
        model_name=model_name,
        load_in_4bit=load_in_4bit,
        device=device,
        oracle_timeout_seconds=oracle_timeout,
        oracle_max_tokens=oracle_max_tokens,
        session_backend=session_backend,
        session_dir=_resolve_path(os.getenv("SESSION_DIR", "").strip(), defaults.session_dir),
        recommendations_dir=_resolve_path(
            os.getenv("RECOMMENDATIONS_DIR", "").strip(),
            defaults.recommendations_dir,
        ),
        sweep_interval_seconds=sweep_interval,
        secret_key=os.getenv("SECRET_KEY", "").strip() or defaults.secret_key,
        log_level=log_level,
    )

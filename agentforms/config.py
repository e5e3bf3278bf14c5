"""
Centralized configuration with environment variable overrides.

Extraction thresholds, model settings, webhook delivery limits and
session guardrails are configurable here. Nothing is hardcoded in the
engine, extractor or delivery logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    raw = os.getenv(env_var, default).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean for {env_var}: {raw!r}")


@dataclass(frozen=True)
class ExtractionConfig:
    """Field extraction acceptance settings."""

    confidence_threshold: int = _safe_int("EXTRACTION_CONFIDENCE_THRESHOLD", "70")
    llm_timeout_sec: float = _safe_float("LLM_TIMEOUT_SECONDS", "30")


@dataclass(frozen=True)
class ModelConfig:
    """Language-model collaborator settings. An empty API key disables the LLM."""

    llm_model: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    llm_temperature: float = _safe_float("LLM_TEMPERATURE", "0.3")
    llm_base_url: str = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    llm_api_key: str = os.getenv("LLM_API_KEY", os.getenv("OPENAI_API_KEY", ""))
    max_tokens: int = _safe_int("LLM_MAX_TOKENS", "512")


@dataclass(frozen=True)
class WebhookConfig:
    """Outbound delivery limits, retry defaults and health thresholds."""

    timeout_sec: float = _safe_float("WEBHOOK_TIMEOUT_SECONDS", "10")
    max_concurrency: int = _safe_int("WEBHOOK_MAX_CONCURRENCY", "8")
    max_attempts: int = _safe_int("WEBHOOK_MAX_ATTEMPTS", "1")
    backoff_multiplier: float = _safe_float("WEBHOOK_BACKOFF_MULTIPLIER", "2.0")
    initial_delay_sec: float = _safe_float("WEBHOOK_INITIAL_DELAY_SECONDS", "1.0")
    health_window: int = _safe_int("WEBHOOK_HEALTH_WINDOW", "100")
    healthy_threshold: float = _safe_float("WEBHOOK_HEALTHY_THRESHOLD", "95")
    warning_threshold: float = _safe_float("WEBHOOK_WARNING_THRESHOLD", "80")
    count_test_deliveries: bool = _safe_bool("WEBHOOK_COUNT_TEST_DELIVERIES", "false")


@dataclass(frozen=True)
class SessionConfig:
    """Visitor input limits and rule lookup defaults."""

    max_message_length: int = _safe_int("MAX_MESSAGE_LENGTH", "2000")
    messages_per_minute: int = _safe_int("MESSAGES_PER_MINUTE", "30")
    form_component: str = os.getenv("VALIDATION_FORM_COMPONENT", "agent_session")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    service_name: str = os.getenv("SERVICE_NAME", "agentforms")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if not 0 <= config.extraction.confidence_threshold <= 100:
        raise ValueError(
            "EXTRACTION_CONFIDENCE_THRESHOLD must be between 0 and 100, "
            f"got {config.extraction.confidence_threshold}"
        )
    if config.extraction.llm_timeout_sec <= 0:
        raise ValueError(
            f"LLM_TIMEOUT_SECONDS must be > 0, got {config.extraction.llm_timeout_sec}"
        )
    if not 0.0 <= config.model.llm_temperature <= 2.0:
        raise ValueError(
            f"LLM_TEMPERATURE must be between 0.0 and 2.0, got {config.model.llm_temperature}"
        )
    if config.webhooks.timeout_sec <= 0:
        raise ValueError(
            f"WEBHOOK_TIMEOUT_SECONDS must be > 0, got {config.webhooks.timeout_sec}"
        )
    if config.webhooks.max_concurrency < 1:
        raise ValueError(
            f"WEBHOOK_MAX_CONCURRENCY must be >= 1, got {config.webhooks.max_concurrency}"
        )
    if config.webhooks.max_attempts < 1:
        raise ValueError(
            f"WEBHOOK_MAX_ATTEMPTS must be >= 1, got {config.webhooks.max_attempts}"
        )
    if config.webhooks.backoff_multiplier < 1.0:
        raise ValueError(
            "WEBHOOK_BACKOFF_MULTIPLIER must be >= 1.0, "
            f"got {config.webhooks.backoff_multiplier}"
        )
    if config.webhooks.health_window < 1:
        raise ValueError(
            f"WEBHOOK_HEALTH_WINDOW must be >= 1, got {config.webhooks.health_window}"
        )

    for name, value in [
        ("WEBHOOK_HEALTHY_THRESHOLD", config.webhooks.healthy_threshold),
        ("WEBHOOK_WARNING_THRESHOLD", config.webhooks.warning_threshold),
    ]:
        if not 0.0 <= value <= 100.0:
            raise ValueError(f"{name} must be between 0 and 100, got {value}")

    if config.webhooks.warning_threshold > config.webhooks.healthy_threshold:
        raise ValueError(
            "WEBHOOK_WARNING_THRESHOLD must not exceed WEBHOOK_HEALTHY_THRESHOLD"
        )
    if config.sessions.max_message_length < 1:
        raise ValueError(
            f"MAX_MESSAGE_LENGTH must be >= 1, got {config.sessions.max_message_length}"
        )
    if config.sessions.messages_per_minute < 1:
        raise ValueError(
            f"MESSAGES_PER_MINUTE must be >= 1, got {config.sessions.messages_per_minute}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.service_name)
    return config


# Singleton instance
settings = load_config()

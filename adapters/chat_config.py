"""Chat config loading, interpolation, section merge, and redaction.

Provides:
- YAML config file (.chat.config.yaml) layered over built-in defaults
- {env:VAR} interpolation of the connection fields, with an env allowlist
- Redaction for safe logging (never leak API keys)

Both the chat relay sidecar and the chat CLI read the same file. The relay
uses the `provider` and `chat` sections; the CLI uses `client`.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("chatstream.config")

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG_PATH = ".chat.config.yaml"

SYSTEM_PROMPT = (
    "You are the FoodPanda Retention Support assistant. Help customers with "
    "delivery issues and delays, pricing concerns and refunds, rating and "
    "quality complaints, and special offers. Be empathetic and concise, and "
    "when a customer is at risk of leaving, suggest a personalized deal to "
    "win them back."
)

GREETING = (
    "Welcome to FoodPanda Retention Support! I'm your AI assistant. "
    "How can I help you today?\n\n"
    "I can help with:\n"
    "- Delivery issues & delays\n"
    "- Pricing concerns & refunds\n"
    "- Rating & quality complaints\n"
    "- Special offers & discounts\n"
    "- Re-engagement with personalized deals"
)

DEFAULTS: Dict[str, Any] = {
    "provider": {
        "name": "default",
        "base_url": "",
        "api_key": "",
        "model": "google/gemini-2.5-flash",
        "connect_timeout_ms": 5000,
        "read_timeout_ms": 60000,
        "total_timeout_ms": 300000,
    },
    "chat": {
        "system_prompt": SYSTEM_PROMPT,
        "greeting": GREETING,
    },
    "client": {
        "url": "http://127.0.0.1:3001/chat",
        "api_key": "",
        "read_timeout_ms": 120000,
    },
}

# Connection fields that may be written as {env:VAR}
INTERPOLATED_FIELDS = (
    ("provider", "base_url"),
    ("provider", "api_key"),
    ("client", "url"),
    ("client", "api_key"),
)

# Environment variables {env:VAR} may read
_ENV_ALLOWLIST_RE = re.compile(r"^(CHAT_[A-Z0-9_]+|OPENAI_API_KEY|GEMINI_API_KEY|LOVABLE_API_KEY)$")

_ENV_TOKEN_RE = re.compile(r"\{env:([^}]+)\}")

# Request headers that carry credentials
_SECRET_HEADERS = {"authorization", "proxy-authorization", "x-api-key"}


# ── Interpolation ─────────────────────────────────────────────────────


def resolve_env(value: str) -> str:
    """Replace {env:VAR} tokens with values from the environment."""

    def _lookup(match: re.Match) -> str:
        name = match.group(1)
        if not _ENV_ALLOWLIST_RE.match(name):
            raise ValueError(
                f"Environment variable '{name}' is not in the allowlist "
                f"(CHAT_*, OPENAI_API_KEY, GEMINI_API_KEY, LOVABLE_API_KEY)"
            )
        if name not in os.environ:
            raise ValueError(f"Environment variable '{name}' is not set")
        return os.environ[name]

    return _ENV_TOKEN_RE.sub(_lookup, value)


def interpolate_config(config: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Resolve {env:VAR} in the connection fields, in place.

    A token in any other field is a config error.
    """
    for section, values in config.items():
        for key, value in values.items():
            if not isinstance(value, str) or not _ENV_TOKEN_RE.search(value):
                continue
            if (section, key) not in INTERPOLATED_FIELDS:
                allowed = ", ".join(".".join(f) for f in INTERPOLATED_FIELDS)
                raise ValueError(f"{section}.{key}: {{env:}} is only supported in {allowed}")
            values[key] = resolve_env(value)
    return config


# ── Merging ───────────────────────────────────────────────────────────


def merge_config(base: Dict[str, Dict[str, Any]], overlay: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Layer overlay over base one section at a time.

    Returns a new dict; neither input is modified. Sections unknown to base
    are kept as given.
    """
    result = {section: dict(values) for section, values in base.items()}
    for section, values in overlay.items():
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        result.setdefault(section, {}).update(values)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def load_config(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Load the chat config: defaults, then the YAML file, then interpolation.

    Path resolution: explicit argument, then $CHAT_CONFIG, then
    .chat.config.yaml in the working directory. A missing file at the default
    location is not an error (defaults apply); a missing explicit file is.
    """
    explicit = path or os.environ.get("CHAT_CONFIG")
    config_path = Path(explicit or DEFAULT_CONFIG_PATH)

    overlay: Dict[str, Any] = {}
    if config_path.is_file():
        with open(config_path) as f:
            overlay = yaml.safe_load(f) or {}
        if not isinstance(overlay, dict):
            raise ValueError(f"Config root must be a mapping: {config_path}")
    elif explicit:
        raise ValueError(f"Config not found: {config_path}")

    config = interpolate_config(merge_config(DEFAULTS, overlay))
    logger.debug("Loaded config from %s: %s", config_path, redact_config(overlay))
    return config


# ── Redaction ─────────────────────────────────────────────────────────


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, str) and _ENV_TOKEN_RE.search(value):
        sources = ", ".join(f"env:{name}" for name in _ENV_TOKEN_RE.findall(value))
        return f"{REDACTED} (from {sources})"
    if key == "api_key" and value:
        return REDACTED
    return value


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a config that is safe to print.

    Non-empty api_key values are masked; unresolved {env:VAR} values show
    their source instead.
    """
    return {
        section: {key: _redact_value(key, value) for key, value in values.items()}
        if isinstance(values, dict) else values
        for section, values in config.items()
    }


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of request headers with credentials masked."""
    return {
        key: REDACTED if key.lower() in _SECRET_HEADERS else value
        for key, value in headers.items()
    }

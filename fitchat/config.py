"""Runtime settings for fitchat, read from ``FITCHAT_*`` environment variables."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from fitchat.network.constants import (
    CONTENT_TOPIC,
    DEFAULT_HMAC_KEY,
    DEFAULT_PEER_TIMEOUT_SECONDS,
    DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    DEFAULT_RELAY_HOST,
    DEFAULT_RELAY_PORT,
    STORE_PAGE_SIZE,
)


@dataclass(slots=True)
class Settings:
    content_topic: str = CONTENT_TOPIC
    store_page_size: int = STORE_PAGE_SIZE
    peer_timeout: float = DEFAULT_PEER_TIMEOUT_SECONDS
    publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS
    encryption_mode: str = "none"
    topic_key_b64: Optional[str] = None
    relay_host: str = DEFAULT_RELAY_HOST
    relay_port: int = DEFAULT_RELAY_PORT
    hmac_key: bytes = DEFAULT_HMAC_KEY

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment, falling back to defaults.

        Args:
            environ: Mapping to read from instead of ``os.environ``.

        Raises:
            ValueError: If a numeric variable cannot be parsed or is not positive.
        """
        env = os.environ if environ is None else environ
        settings = cls()

        settings.content_topic = env.get("FITCHAT_CONTENT_TOPIC") or settings.content_topic
        settings.store_page_size = _positive(env, "FITCHAT_STORE_PAGE_SIZE", int, settings.store_page_size)
        settings.peer_timeout = _positive(env, "FITCHAT_PEER_TIMEOUT", float, settings.peer_timeout)
        settings.publish_timeout = _positive(env, "FITCHAT_PUBLISH_TIMEOUT", float, settings.publish_timeout)
        settings.encryption_mode = env.get("FITCHAT_ENCRYPTION") or settings.encryption_mode
        settings.topic_key_b64 = env.get("FITCHAT_TOPIC_KEY") or None
        settings.relay_host = env.get("FITCHAT_RELAY_HOST") or settings.relay_host
        settings.relay_port = _positive(env, "FITCHAT_RELAY_PORT", int, settings.relay_port)

        raw_hmac = env.get("FITCHAT_HMAC_KEY")
        if raw_hmac:
            settings.hmac_key = raw_hmac.encode("utf-8")
        return settings


def _positive(env: Mapping[str, str], name: str, cast, default):
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value

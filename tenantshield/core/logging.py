from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import sys
import threading
from typing import Any

from cryptography.exceptions import InvalidTag
from redis.exceptions import RedisError

from tenantshield.core.config import get_settings
from tenantshield.services.crypto.utils import derive_key, open_text, seal_text


logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Raw identifier -> pseudonym for subjects whose erasure has been processed.
_redacted_subjects: dict[str, str] = {}
_redacted_lock = threading.Lock()


def pseudonymize_identifier(value: str) -> str:
    """Return an irreversible, salted pseudonym for a subject identifier."""
    salt = get_settings().log_pseudonym_salt.encode("utf-8")
    digest = hmac.new(salt, value.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"anon_{digest[:24]}"


def register_redacted_subject(value: str) -> str:
    # Future log lines mentioning the raw value are rewritten to its pseudonym.
    pseudonym = pseudonymize_identifier(value)
    with _redacted_lock:
        _redacted_subjects[value] = pseudonym
    return pseudonym


def redacted_subjects() -> dict[str, str]:
    with _redacted_lock:
        return dict(_redacted_subjects)


def clear_redacted_subjects() -> None:
    with _redacted_lock:
        _redacted_subjects.clear()


def _registry_key() -> bytes:
    return derive_key(get_settings().log_pseudonym_salt, purpose="log-redaction-registry")


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


async def share_redacted_subjects(redis: Any, registered: dict[str, str]) -> None:
    """Publish raw identifier -> pseudonym pairs to the registry every process loads.

    The hash is keyed by pseudonym and each raw identifier is stored sealed,
    so reading the registry without the salt reveals nothing.
    """
    if not registered:
        return
    key = _registry_key()
    mapping = {
        pseudonym: seal_text(key, raw, aad=pseudonym.encode("utf-8"))
        for raw, pseudonym in registered.items()
    }
    await redis.hset(get_settings().log_redaction_registry_key, mapping=mapping)


async def load_redacted_subjects(redis: Any) -> int:
    """Merge the shared registry into this process's redaction filter; returns entries loaded."""
    entries = await redis.hgetall(get_settings().log_redaction_registry_key)
    key = _registry_key()
    loaded: dict[str, str] = {}
    for field, token in entries.items():
        pseudonym = _text(field)
        try:
            raw = open_text(key, _text(token), aad=pseudonym.encode("utf-8"))
        except (InvalidTag, ValueError):
            # Sealed under another salt or altered in place.
            logger.warning("log_redaction.registry_entry_unreadable pseudonym=%s", pseudonym)
            continue
        loaded[raw] = pseudonymize_identifier(raw)
    with _redacted_lock:
        _redacted_subjects.update(loaded)
    return len(loaded)


async def refresh_redacted_subjects(redis: Any, interval_s: float) -> None:
    # Runs until cancelled, picking up erasures processed by other workers.
    while True:
        await asyncio.sleep(interval_s)
        try:
            await load_redacted_subjects(redis)
        except (RedisError, OSError) as exc:
            logger.warning("log_redaction.registry_refresh_failed error=%s", exc.__class__.__name__)


def redact_text(text: str) -> str:
    subjects = redacted_subjects()
    if not subjects:
        return text
    # Replace longer identifiers first so overlapping ids never leak a suffix.
    for raw in sorted(subjects, key=len, reverse=True):
        if raw and raw in text:
            text = text.replace(raw, subjects[raw])
    return text


class SubjectRedactionFilter(logging.Filter):
    """Rewrite erased subject identifiers in log records before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not _redacted_subjects:
            return True
        message = record.getMessage()
        redacted = redact_text(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str | None = None) -> None:
    # Install a single stream handler carrying the redaction filter; safe to call repeatedly.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    for handler in root.handlers:
        if getattr(handler, "_tenantshield", False):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(SubjectRedactionFilter())
    handler._tenantshield = True  # type: ignore[attr-defined]
    root.addHandler(handler)


async def configure_shared_logging(redis: Any, level: str | None = None) -> int:
    """Install the handler, then seed redaction from the shared registry."""
    configure_logging(level)
    try:
        return await load_redacted_subjects(redis)
    except (RedisError, OSError) as exc:
        # Start anyway; the refresh loop or the next job retries the load.
        logger.warning("log_redaction.registry_load_failed error=%s", exc.__class__.__name__)
        return 0

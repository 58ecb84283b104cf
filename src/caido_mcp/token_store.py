from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError

from .config import Settings
from .models import Credential, as_utc, utcnow

logger = logging.getLogger(__name__)


def is_expired(expires_at: Optional[datetime], margin: timedelta = timedelta(minutes=5), now: Optional[datetime] = None) -> bool:
    """A token without an expiry never expires; otherwise it is considered
    expired once fewer than ``margin`` remain."""
    if expires_at is None:
        return False
    return (now or utcnow()) >= as_utc(expires_at) - margin


class TokenStore:
    """Persists one credential for the configured Caido endpoint.

    The record is tagged with the endpoint it was issued for, so switching
    ``base_url`` never picks up a token from another instance. Filesystem
    problems are logged and reported as "no credential".
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def path(self):
        return self.settings.token_path

    def save(self, credential: Credential) -> Optional[Credential]:
        record = credential.model_copy(update={"source_endpoint": self.settings.base_url, "saved_at": utcnow()})
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record.to_record(), fh, indent=2)
            # O_CREAT mode is ignored for an existing file
            os.chmod(self.path, 0o600)
        except OSError as e:
            logger.error("Failed to save token to disk: %s", e)
            return None
        logger.info("Token saved to %s", self.path)
        return record

    def load(self) -> Optional[Credential]:
        if not self.path.exists():
            logger.info("No saved token file found")
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            credential = Credential.model_validate(raw)
        except (OSError, ValueError, ValidationError) as e:
            logger.error("Failed to load token from disk: %s", e)
            return None
        if credential.source_endpoint != self.settings.base_url:
            logger.info(
                "Saved token is for %s, current instance is %s; skipping",
                credential.source_endpoint,
                self.settings.base_url,
            )
            return None
        logger.info("Loaded saved token from disk")
        return credential

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("Failed to remove saved token: %s", e)
            return False
        return True

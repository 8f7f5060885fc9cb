"""
auth/notifier.py -- Delivery hook for password-reset and verification tokens.

Email delivery is owned by another part of DoorPro. The auth service only hands
over the raw token and its expiry through this protocol. LoggingNotifier is the
default when no mailer is wired in: it records that a message was due but never
writes the token value to the log.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from auth.models import UserIdentity

logger = logging.getLogger("doorpro.auth.notifier")


class Notifier(Protocol):
    def send_password_reset(self, user: UserIdentity, token: str, expires_at: datetime) -> None: ...

    def send_email_verification(self, user: UserIdentity, token: str, expires_at: datetime) -> None: ...


class LoggingNotifier:
    """Notifier used until a real mail transport is configured."""

    def send_password_reset(self, user: UserIdentity, token: str, expires_at: datetime) -> None:
        logger.warning(
            "Password reset issued for user_id=%s (expires %s) but no mail transport is configured",
            user.id,
            expires_at.isoformat(),
        )

    def send_email_verification(self, user: UserIdentity, token: str, expires_at: datetime) -> None:
        logger.warning(
            "Email verification issued for user_id=%s (expires %s) but no mail transport is configured",
            user.id,
            expires_at.isoformat(),
        )

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from credcore.logging import get_logger
from credcore.storage.models import User

logger = get_logger(__name__)


class ResetNotifier(Protocol):
    async def send_password_reset(
        self, user: User, token: str, expires_at: datetime
    ) -> None: ...


def redact_email(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


class LogResetNotifier:
    """Fallback used when no mailer is wired in: records the request only.

    The token itself is never logged; a deployment that needs working resets
    passes its own :class:`ResetNotifier` to the auth service.
    """

    async def send_password_reset(
        self, user: User, token: str, expires_at: datetime
    ) -> None:
        logger.info(
            "password_reset_email_dev_mode",
            to=redact_email(user.email),
            user_id=user.id,
            expires_at=expires_at.isoformat(),
        )

"""
User notices (toll charged, low balance, GPS lost...).
"""

import logging
from typing import Optional

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


class UserNotifier:
    """Logs every notice and, if enabled, e-mails it to the wallet owner."""

    def __init__(self, email: Optional[str] = None, email_alerts: bool = False):
        self.email = email
        self.email_alerts = email_alerts

    def notify(self, title: str, message: str) -> bool:
        """
        Deliver a notice.

        Returns:
            True if an e-mail was sent
        """
        logger.info(f"[notice] {title}: {message}")

        if not (self.email_alerts and self.email):
            return False

        try:
            send_mail(
                subject=f"{settings.EMAIL_SUBJECT_PREFIX}{title}",
                message=message,
                from_email=settings.DEFAULT_FROM_EMAIL,
                recipient_list=[self.email],
                fail_silently=False,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to send notice '{title}' to {self.email}: {e}", exc_info=True)
            return False

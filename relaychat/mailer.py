"""
Transactional email over SMTP.
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from relaychat.errors import DependencyFailed

logger = logging.getLogger(__name__)


OTP_SUBJECT = "Your verification code"

OTP_HTML = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2>Email Verification</h2>
    <p>Your verification code is:</p>
    <p style="font-size: 32px; font-weight: bold; letter-spacing: 5px; text-align: center;">{code}</p>
    <p>This code will expire in {minutes} minutes.</p>
    <p>If you didn't request this code, please ignore this email.</p>
  </div>
</body>
</html>
"""


class SmtpMailer:
    def __init__(self, host: Optional[str], port: int, user: Optional[str], password: Optional[str],
                 sender: Optional[str], use_tls: bool = True):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.use_tls = use_tls

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    async def send_otp(self, email: str, code: str, ttl_seconds: int) -> None:
        """
        Mail a verification code.

        Raises:
            DependencyFailed: mail is not configured or the SMTP exchange failed
        """
        if not self.configured:
            logger.error("Email delivery is not configured (EMAIL_HOST/EMAIL_FROM)")
            raise DependencyFailed("Email delivery is not configured")

        minutes = max(1, ttl_seconds // 60)
        message = EmailMessage()
        message["Subject"] = OTP_SUBJECT
        message["From"] = self.sender
        message["To"] = email
        message.set_content(f"Your verification code is: {code}. This code will expire in {minutes} minutes.")
        message.add_alternative(OTP_HTML.format(code=code, minutes=minutes), subtype="html")

        try:
            await run_in_threadpool(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send verification email: {e}")
            raise DependencyFailed("Failed to send OTP. Please try again.") from e
        logger.info("Verification email sent")

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.send_message(message)

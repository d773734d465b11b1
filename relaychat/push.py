"""
Push notifications through Firebase Cloud Messaging.

The gateway only reports outcomes. Pruning tokens the gateway calls
invalid is left to the caller, which owns the token table.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError, InvalidArgumentError
from fastapi.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


@dataclass
class PushReport:
    success_count: int = 0
    failure_count: int = 0
    invalid_tokens: List[str] = field(default_factory=list)


class FirebasePushGateway:
    """Sends one message per device token with the Firebase Admin SDK."""

    APP_NAME = "relaychat"

    def __init__(self, credentials_path: Optional[str] = None):
        self._app = None
        if credentials_path:
            try:
                self._app = firebase_admin.get_app(self.APP_NAME)
            except ValueError:
                self._app = firebase_admin.initialize_app(
                    credentials.Certificate(credentials_path), name=self.APP_NAME
                )
            logger.info("Push notifications enabled")
        else:
            logger.info("FIREBASE_CREDENTIALS not set, push notifications disabled")

    @property
    def enabled(self) -> bool:
        return self._app is not None

    async def send_to_tokens(self, tokens: List[str], title: str, body: str,
                             data: Optional[Dict[str, str]] = None) -> PushReport:
        if not tokens:
            return PushReport()
        if not self.enabled:
            logger.debug(f"Push disabled, skipping {len(tokens)} token(s)")
            return PushReport()
        return await run_in_threadpool(self._send_all, tokens, title, body, data or {})

    def _send_all(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> PushReport:
        report = PushReport()
        payload = {key: str(value) for key, value in data.items()}
        payload["timestamp"] = str(int(time.time() * 1000))

        for index, token in enumerate(tokens, start=1):
            message = messaging.Message(
                token=token,
                notification=messaging.Notification(title=title, body=body),
                data=payload,
                android=messaging.AndroidConfig(
                    priority="high",
                    notification=messaging.AndroidNotification(
                        channel_id="messages", sound="default", color="#E91E63"
                    ),
                ),
                apns=messaging.APNSConfig(
                    payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1)),
                ),
            )
            try:
                messaging.send(message, app=self._app)
                report.success_count += 1
            except (messaging.UnregisteredError, InvalidArgumentError) as e:
                report.failure_count += 1
                report.invalid_tokens.append(token)
                logger.warning(f"Push token {index}/{len(tokens)} invalid or expired: {e}")
            except FirebaseError as e:
                report.failure_count += 1
                logger.warning(f"Push to token {index}/{len(tokens)} failed: {e.code} {e}")

        logger.info(f"Push sent: {report.success_count}/{len(tokens)} successful")
        return report

"""
Process-wide components, built once at start-up and handed to the routes
through `app.state.services`.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from relaychat.cache import ResponseCache
from relaychat.codes import build_code_store
from relaychat.config import Settings
from relaychat.fanout import FanoutRouter, WebSocketHub
from relaychat.mailer import SmtpMailer
from relaychat.object_store import CloudinaryObjectStore
from relaychat.pipeline import MessagePipeline
from relaychat.presence import PresenceRegistry
from relaychat.push import FirebasePushGateway
from relaychat.storage import SessionLocal

logger = logging.getLogger(__name__)


@dataclass
class Services:
    presence: PresenceRegistry
    hub: WebSocketHub
    router: FanoutRouter
    pipeline: MessagePipeline
    codes: object
    mailer: object
    push: object
    objects: object
    cache: ResponseCache


def build_services(
    settings: Settings,
    *,
    transport=None,
    push_gateway=None,
    object_store=None,
    mailer=None,
    code_store=None,
    cache: Optional[ResponseCache] = None,
    session_factory=SessionLocal,
) -> Services:
    """
    Wire the components. Keyword overrides replace the default external
    collaborators, which is how tests swap in fakes.
    """
    presence = PresenceRegistry()
    hub = WebSocketHub()
    router = FanoutRouter(presence, transport if transport is not None else hub)

    if push_gateway is None:
        push_gateway = FirebasePushGateway(settings.FIREBASE_CREDENTIALS)
    if object_store is None:
        object_store = CloudinaryObjectStore(
            settings.CLOUDINARY_CLOUD_NAME,
            settings.CLOUDINARY_API_KEY,
            settings.CLOUDINARY_API_SECRET,
            signed_url_days=settings.SIGNED_URL_DAYS,
        )
    if mailer is None:
        mailer = SmtpMailer(
            settings.EMAIL_HOST,
            settings.EMAIL_PORT,
            settings.EMAIL_USER,
            settings.EMAIL_PASSWORD,
            settings.EMAIL_FROM,
            use_tls=settings.EMAIL_USE_TLS,
        )
    if code_store is None:
        code_store = build_code_store(settings.REDIS_URL)
    if cache is None:
        cache = ResponseCache.from_url(settings.REDIS_URL, settings.CACHE_TTL_SECONDS)

    pipeline = MessagePipeline(router, push_gateway, object_store, cache, session_factory)
    logger.info("Services initialized")
    return Services(
        presence=presence,
        hub=hub,
        router=router,
        pipeline=pipeline,
        codes=code_store,
        mailer=mailer,
        push=push_gateway,
        objects=object_store,
        cache=cache,
    )

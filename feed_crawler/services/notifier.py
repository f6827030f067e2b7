"""Push notification fan-out.

After a crawl stores new articles, every active push endpoint of the
source's owner is pinged. Pings are VAPID-signed and carry no body: the
receiving service worker fetches the latest notification payload (see
``latest_notification``), which avoids payload encryption in the transport.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol
from urllib.parse import urlsplit

import httpx
from py_vapid import Vapid01

from feed_crawler.models.schemas import Article
from feed_crawler.storage import database

logger = logging.getLogger(__name__)

DEFAULT_BODY = "A new article is ready for you."
BODY_MAX_LENGTH = 180
VAPID_TOKEN_LIFETIME = 12 * 60 * 60


class DeliveryResult(str, Enum):
    OK = "ok"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


class PushSender(Protocol):
    async def send(self, endpoint: str, keys: Dict[str, str], payload: Dict[str, str]) -> DeliveryResult:
        ...


class WebPushSender:
    """Sends body-less Web Push pings signed with the server's VAPID key."""

    # Push services answer 404/410 once a subscription has expired or been revoked
    GONE_STATUSES = (404, 410)

    def __init__(self, private_key: str, contact: str, timeout: float = 10.0, ttl: int = 2419200):
        self.vapid = Vapid01.from_string(private_key)
        self.contact = contact
        self.timeout = timeout
        self.ttl = ttl

    def vapid_headers(self, endpoint: str) -> Dict[str, str]:
        """Sign a fresh token for the push service that owns ``endpoint``.

        Returns:
            ``Authorization`` (``WebPush <jwt>``) and ``Crypto-Key`` headers
        """
        parts = urlsplit(endpoint)
        claims = {
            "aud": f"{parts.scheme}://{parts.netloc}",
            "sub": self.contact,
            "exp": int(time.time()) + VAPID_TOKEN_LIFETIME,
        }
        return self.vapid.sign(claims)

    async def send(self, endpoint: str, keys: Dict[str, str], payload: Dict[str, str]) -> DeliveryResult:
        headers = {"TTL": str(self.ttl), "Content-Length": "0"}
        headers.update(self.vapid_headers(endpoint))

        logger.debug(f"Pinging {endpoint} for '{payload.get('title', '')}'")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(endpoint, headers=headers)
            except httpx.HTTPError as e:
                logger.warning(f"Push delivery to {endpoint} failed: {e}")
                return DeliveryResult.TRANSIENT_FAILURE

        if response.status_code in self.GONE_STATUSES:
            return DeliveryResult.PERMANENT_FAILURE
        if response.is_success:
            return DeliveryResult.OK

        logger.warning(f"Push service responded with {response.status_code} for {endpoint}")
        return DeliveryResult.TRANSIENT_FAILURE


@dataclass
class FanOutReport:
    """Outcome of notifying one batch of articles."""

    articles: int = 0
    delivered: int = 0
    transient_failures: int = 0
    pruned: List[str] = field(default_factory=list)


def build_payload(article: Article) -> Dict[str, str]:
    """Build the notification shown for an article."""
    body = (
        article.notification_content
        or (article.summary or "")[:BODY_MAX_LENGTH]
        or DEFAULT_BODY
    )
    return {"title": article.title, "body": body, "url": article.url}


async def notify_new_articles(owner_id: str, articles: List[Article], sender: PushSender) -> FanOutReport:
    """Deliver notifications for new articles to the owner's endpoints.

    An endpoint reported gone is deactivated and not tried again in this
    batch. Transient failures are logged only. Every article is flagged as
    notified afterwards, whatever the per-endpoint outcome.

    Args:
        owner_id: Account that owns the source
        articles: Newly stored articles not yet notified
        sender: Push transport

    Returns:
        FanOutReport with delivery counts and pruned endpoints
    """
    report = FanOutReport()
    pending = [a for a in articles if not a.notification_sent]
    if not pending:
        return report

    subscriptions = await database.list_active_subscriptions(owner_id)
    gone = set()

    for article in pending:
        payload = build_payload(article)
        report.articles += 1

        for subscription in subscriptions:
            if subscription.endpoint in gone:
                continue

            try:
                result = await sender.send(subscription.endpoint, subscription.keys, payload)
            except Exception as e:
                logger.warning(f"Push sender raised for {subscription.endpoint}: {e}")
                result = DeliveryResult.TRANSIENT_FAILURE

            if result == DeliveryResult.OK:
                report.delivered += 1
            elif result == DeliveryResult.PERMANENT_FAILURE:
                logger.info(f"Push endpoint gone, deactivating: {subscription.endpoint}")
                await database.deactivate_subscription(subscription.endpoint)
                gone.add(subscription.endpoint)
                report.pruned.append(subscription.endpoint)
            else:
                report.transient_failures += 1

    await database.mark_notification_sent(a.id for a in pending)
    for article in pending:
        article.notification_sent = True

    return report


async def latest_notification(owner_id: str) -> Optional[Dict[str, str]]:
    """Payload for the owner's most recent article, fetched by the service worker."""
    articles, _ = await database.list_articles(owner_id=owner_id, limit=1)
    if not articles:
        return None
    return build_payload(articles[0])

"""
Notification delivery for role lifecycle events.

Every dispatcher deduplicates on the event's dedup key before delivering, so
redundant or overlapping sweep runs deliver each reminder at most once per
window. Delivery failures are reported in the result and never raised.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

import httpx

from role_lifecycle.shared.errors import NotificationDeliveryError

from .config import LifecycleConfig
from .models import (
    DeliveryStatus,
    NotificationEvent,
    NotificationResult,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Deduplication
# =============================================================================


class ClaimState(str, Enum):
    """Outcome of claiming a dedup key."""

    CLAIMED = "claimed"  # caller now owns delivery
    PENDING = "pending"  # someone else is delivering
    DELIVERED = "delivered"  # already delivered inside the window


class DedupStore(ABC):
    """
    Remembers which dedup keys are being, or have been, delivered.

    A claim starts out pending and only becomes delivered once ``confirm``
    is called. A pending claim that is never confirmed lapses after its
    short TTL, so a crashed deliverer does not suppress the notice forever.
    """

    @abstractmethod
    async def claim(self, key: str, pending_ttl: timedelta) -> ClaimState:
        """Try to take ownership of delivering ``key``."""

    @abstractmethod
    async def confirm(self, key: str, ttl: timedelta) -> None:
        """Mark a claimed key as delivered for the dedup window ``ttl``."""

    @abstractmethod
    async def release(self, key: str) -> None:
        """Forget a claim so that a later attempt may deliver again."""


@dataclass
class DedupEntry:
    """Dedup claim with TTL tracking."""

    state: ClaimState
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return utc_now() >= self.expires_at


class InMemoryDedupStore(DedupStore):
    """In-memory dedup claims (single process only)."""

    def __init__(self):
        self._claims: Dict[str, DedupEntry] = {}
        self._lock = asyncio.Lock()

    async def claim(self, key: str, pending_ttl: timedelta) -> ClaimState:
        async with self._lock:
            self._cleanup_expired()
            entry = self._claims.get(key)
            if entry is not None:
                return entry.state
            self._claims[key] = DedupEntry(
                state=ClaimState.PENDING, expires_at=utc_now() + pending_ttl
            )
            return ClaimState.CLAIMED

    async def confirm(self, key: str, ttl: timedelta) -> None:
        async with self._lock:
            self._claims[key] = DedupEntry(
                state=ClaimState.DELIVERED, expires_at=utc_now() + ttl
            )

    async def release(self, key: str) -> None:
        async with self._lock:
            self._claims.pop(key, None)

    def _cleanup_expired(self):
        expired = [k for k, v in self._claims.items() if v.is_expired]
        for k in expired:
            del self._claims[k]


class DynamoDBDedupStore(DedupStore):
    """
    DynamoDB dedup claims shared by every process.

    Claims are conditional puts; ``expiresAt`` is the table's TTL attribute.
    DynamoDB deletes expired items lazily, so an expired-but-present claim is
    also treated as free.
    """

    def __init__(self, table_name: Optional[str] = None, region: Optional[str] = None):
        import boto3
        from botocore.exceptions import ClientError

        self.table_name = table_name or os.getenv(
            "DYNAMODB_NOTIFICATION_DEDUP_TABLE_NAME", "role-notification-dedup"
        )
        self.region = region or os.getenv(
            "AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-west-2")
        )
        self._table = boto3.resource("dynamodb", region_name=self.region).Table(
            self.table_name
        )
        self._client_error = ClientError

        logger.info(
            f"Initialized DynamoDB dedup store: table={self.table_name}, region={self.region}"
        )

    async def claim(self, key: str, pending_ttl: timedelta) -> ClaimState:
        now = int(time.time())
        try:
            self._table.put_item(
                Item={
                    **self._key(key),
                    "claimState": ClaimState.PENDING.value,
                    "expiresAt": now + max(1, int(pending_ttl.total_seconds())),
                    "created_at": now,
                },
                ConditionExpression="attribute_not_exists(PK) OR expiresAt < :now",
                ExpressionAttributeValues={":now": now},
            )
            return ClaimState.CLAIMED
        except self._client_error as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise

        logger.debug(f"Dedup key already claimed: {key}")
        response = self._table.get_item(Key=self._key(key), ConsistentRead=True)
        item = response.get("Item") or {}
        if item.get("claimState") == ClaimState.DELIVERED.value:
            return ClaimState.DELIVERED
        return ClaimState.PENDING

    async def confirm(self, key: str, ttl: timedelta) -> None:
        now = int(time.time())
        self._table.put_item(
            Item={
                **self._key(key),
                "claimState": ClaimState.DELIVERED.value,
                "expiresAt": now + int(ttl.total_seconds()),
                "created_at": now,
            }
        )

    async def release(self, key: str) -> None:
        self._table.delete_item(Key=self._key(key))

    @staticmethod
    def _key(key: str) -> Dict[str, str]:
        return {"PK": f"DEDUP#{key}", "SK": f"DEDUP#{key}"}


# =============================================================================
# Dispatchers
# =============================================================================


class NotificationDispatcher(ABC):
    """Abstract capability for delivering lifecycle notices."""

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> NotificationResult:
        """Best-effort delivery. Never raises for delivery failures."""


class DeduplicatingDispatcher(NotificationDispatcher):
    """
    Dispatcher base with dedup, per-attempt timeout and bounded retries.

    Subclasses implement ``_deliver``, which raises NotificationDeliveryError
    on failure. Only a confirmed delivery suppresses later notices with the
    same key; while another caller's delivery is still pending the result is
    IN_FLIGHT, which callers must not treat as delivered. A claim is released
    when every attempt fails, so the next sweep can try again.
    """

    def __init__(
        self,
        dedup_store: Optional[DedupStore] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        dedup_ttl: timedelta = timedelta(hours=48),
        retry_backoff_seconds: float = 0.5,
    ):
        self.dedup_store = dedup_store or InMemoryDedupStore()
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.dedup_ttl = dedup_ttl
        self.retry_backoff_seconds = retry_backoff_seconds

    @property
    def pending_ttl(self) -> timedelta:
        """Upper bound on one notify call: every attempt plus every backoff."""
        attempts = self.max_retries + 1
        backoff = self.retry_backoff_seconds * (2 ** self.max_retries - 1)
        return timedelta(seconds=self.timeout_seconds * attempts + backoff + 1)

    async def notify(self, event: NotificationEvent) -> NotificationResult:
        try:
            state = await self.dedup_store.claim(event.dedup_key, self.pending_ttl)
        except Exception as e:
            logger.error(
                f"Dedup store failed for {event.dedup_key}: {e}",
                extra={"correlation_id": event.correlation_id},
            )
            return NotificationResult(status=DeliveryStatus.FAILED, error=str(e))

        if state == ClaimState.DELIVERED:
            logger.info(
                f"Suppressed duplicate {event.type.value} notification for "
                f"{event.user_id}:{event.role.value}",
                extra={"event": "notification_duplicate", "dedup_key": event.dedup_key},
            )
            return NotificationResult(status=DeliveryStatus.DUPLICATE)

        if state == ClaimState.PENDING:
            logger.info(
                f"{event.type.value} notification for {event.user_id}:{event.role.value} "
                "is being delivered by another caller",
                extra={"event": "notification_in_flight", "dedup_key": event.dedup_key},
            )
            return NotificationResult(
                status=DeliveryStatus.IN_FLIGHT, error="delivery pending elsewhere"
            )

        last_error: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                await asyncio.sleep(self.retry_backoff_seconds * (2 ** (attempt - 1)))
            try:
                await asyncio.wait_for(self._deliver(event), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.timeout_seconds}s"
            except NotificationDeliveryError as e:
                last_error = e.message
            else:
                await self._confirm(event)
                logger.info(
                    f"Delivered {event.type.value} notification to {event.user_id}",
                    extra={
                        "event": "notification_delivered",
                        "dedup_key": event.dedup_key,
                        "correlation_id": event.correlation_id,
                    },
                )
                return NotificationResult(status=DeliveryStatus.DELIVERED)
            logger.warning(
                f"Notification attempt {attempt + 1} failed for {event.dedup_key}: {last_error}"
            )

        await self.dedup_store.release(event.dedup_key)
        logger.error(
            f"Failed to deliver {event.type.value} notification for "
            f"{event.user_id}:{event.role.value}: {last_error}",
            extra={
                "event": "notification_failed",
                "dedup_key": event.dedup_key,
                "correlation_id": event.correlation_id,
            },
        )
        return NotificationResult(status=DeliveryStatus.FAILED, error=last_error)

    async def _confirm(self, event: NotificationEvent) -> None:
        try:
            await self.dedup_store.confirm(event.dedup_key, self.dedup_ttl)
        except Exception as e:
            # The pending claim lapses on its own; a later notice may repeat
            logger.error(
                f"Could not confirm delivery of {event.dedup_key}: {e}",
                extra={"correlation_id": event.correlation_id},
            )

    @abstractmethod
    async def _deliver(self, event: NotificationEvent) -> None:
        """Deliver one event, raising NotificationDeliveryError on failure."""


class InMemoryNotificationDispatcher(DeduplicatingDispatcher):
    """Keeps delivered events in memory (for local development and tests)."""

    def __init__(self, dedup_store: Optional[DedupStore] = None, **kwargs):
        kwargs.setdefault("retry_backoff_seconds", 0)
        super().__init__(dedup_store=dedup_store, **kwargs)
        self.delivered: List[NotificationEvent] = []

    async def _deliver(self, event: NotificationEvent) -> None:
        self.delivered.append(event)


class HttpNotificationDispatcher(DeduplicatingDispatcher):
    """Posts events as JSON to the email service webhook."""

    def __init__(
        self,
        webhook_url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.webhook_url = webhook_url
        self.api_key = api_key
        self._client = client

    async def _deliver(self, event: NotificationEvent) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if self._client is not None:
            await self._post(self._client, event, headers)
            return

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            await self._post(client, event, headers)

    async def _post(
        self, client: httpx.AsyncClient, event: NotificationEvent, headers: dict
    ) -> None:
        try:
            response = await client.post(
                self.webhook_url, json=event.to_dict(), headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Notification webhook HTTP error: {e.response.status_code} - {e.response.text}"
            )
            raise NotificationDeliveryError(
                f"Webhook returned {e.response.status_code}"
            )
        except httpx.RequestError as e:
            logger.error(f"Notification webhook request error: {e}")
            raise NotificationDeliveryError(f"Webhook request failed: {e}")


def create_notification_dispatcher(
    config: Optional[LifecycleConfig] = None,
) -> NotificationDispatcher:
    """
    Create appropriate dispatcher based on environment configuration.

    Returns:
        HttpNotificationDispatcher if a webhook URL is configured, otherwise
        InMemoryNotificationDispatcher. The dedup store is DynamoDB-backed
        when its table name is configured.
    """
    config = config or LifecycleConfig.from_env()

    dedup_store: DedupStore
    if config.dedup_table_name:
        dedup_store = DynamoDBDedupStore(
            table_name=config.dedup_table_name, region=config.region
        )
    else:
        dedup_store = InMemoryDedupStore()

    policy = dict(
        dedup_store=dedup_store,
        timeout_seconds=config.notify_timeout_seconds,
        max_retries=config.notify_max_retries,
        dedup_ttl=config.notify_dedup_ttl,
    )

    if config.notification_webhook_url:
        return HttpNotificationDispatcher(
            webhook_url=config.notification_webhook_url,
            api_key=config.notification_api_key,
            **policy,
        )

    logger.info(
        "ROLE_NOTIFICATION_WEBHOOK_URL not set. Notifications are kept in memory "
        "and not delivered."
    )
    return InMemoryNotificationDispatcher(**policy)

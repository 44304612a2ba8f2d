"""
NATS JetStream Client for Python Microservices

Provides event-driven communication over NATS JetStream using nats-py.
Domain events are published after the owning storage transaction commits;
delivery to end users (email, in-app) is the notification service's job.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext
from nats.js.errors import BadRequestError

from core.config.infra_config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        return super().default(obj)


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types published by the credit ledger"""

    # Balance events
    CREDITS_ADDED = "credit_ledger.credits.added"
    CREDITS_CONSUMED = "credit_ledger.credits.consumed"
    CREDITS_TRANSFERRED = "credit_ledger.credits.transferred"
    BALANCE_LOW = "credit_ledger.balance.low"

    # Allocation events
    ALLOCATION_CREATED = "credit_ledger.allocation.created"
    ALLOCATION_EXPIRED = "credit_ledger.allocation.expired"
    ALLOCATION_EXPIRING_SOON = "credit_ledger.allocation.expiring_soon"

    # Campaign events
    CAMPAIGN_DISTRIBUTED = "credit_ledger.campaign.distributed"
    CAMPAIGN_ALLOCATION_DEGRADED = "credit_ledger.campaign.allocation_degraded"


class ServiceSource(Enum):
    """Service sources"""

    CREDIT_LEDGER_SERVICE = "credit_ledger_service"
    PAYMENT_SERVICE = "payment_service"
    TENANT_SERVICE = "tenant_service"
    SCHEDULER = "scheduler"


class Event:
    """Event model"""

    def __init__(
        self,
        event_type: Union[EventType, str],
        source: Union[ServiceSource, str],
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value if isinstance(event_type, EventType) else event_type
        self.source = source.value if isinstance(source, ServiceSource) else source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }


class NATSEventBus:
    """
    NATS JetStream event bus.

    One stream per subject prefix ("credit_ledger.>" -> credit-ledger-stream).
    Streams are created on first publish.
    """

    def __init__(
        self,
        service_name: str,
        servers: Optional[List[str]] = None,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as the connection name)
            servers: Optional explicit NATS server URLs
            config: Optional InfraConfig (loaded from environment if not provided)
        """
        self.service_name = service_name

        if config is None:
            config = InfraConfig.from_env()

        self.servers = servers or [config.nats_server_url]

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._known_streams: Dict[str, bool] = {}
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {', '.join(self.servers)}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(servers=self.servers, name=self.service_name)
            self._js = self._nc.jetstream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        The event type doubles as the subject, e.g. "credit_ledger.credits.added"
        lands on credit-ledger-stream.
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            subject = event.type
            payload = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()

            stream_name = self._get_stream_name_for_event(event.type)
            await self._ensure_stream(stream_name, event.type.split('.')[0])

            ack = await self._js.publish(subject, payload, stream=stream_name)
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True

        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def _ensure_stream(self, stream_name: str, subject_prefix: str):
        """Create the stream once per process (idempotent on the server)"""
        if self._known_streams.get(stream_name):
            return
        try:
            await self._js.add_stream(
                name=stream_name,
                subjects=[f"{subject_prefix}.>"],
                max_msgs=100000,
            )
        except BadRequestError as e:
            # Stream already exists with a compatible config
            logger.debug(f"Stream creation note: {e}")
        self._known_streams[stream_name] = True

    def _get_stream_name_for_event(self, event_type: str) -> str:
        """
        Determine the JetStream stream name based on event type.

        Mapping:
        - credit_ledger.* -> credit-ledger-stream
        - payment.* -> payment-stream
        """
        prefix = event_type.split('.')[0]

        stream_mappings = {
            "credit_ledger": "credit-ledger-stream",
            "payment": "payment-stream",
            "tenant": "tenant-stream",
        }

        return stream_mappings.get(prefix, f"{prefix.replace('_', '-')}-stream")

    async def close(self):
        """Flush pending publishes and close the connection"""
        if self._nc:
            await self._nc.drain()
            self._nc = None
            self._js = None

        self._is_connected = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._is_connected


async def get_event_bus(
    service_name: str,
    servers: Optional[List[str]] = None,
    config: Optional[InfraConfig] = None,
) -> NATSEventBus:
    """
    Create and connect an event bus instance.

    Args:
        service_name: Name of the service using the event bus
        servers: Optional explicit NATS server URLs
        config: Optional InfraConfig

    Returns:
        Connected NATSEventBus instance
    """
    event_bus = NATSEventBus(service_name=service_name, servers=servers, config=config)
    await event_bus.connect()
    return event_bus


__all__ = [
    "Event",
    "EventType",
    "ServiceSource",
    "NATSEventBus",
    "get_event_bus",
]

"""
Service Bus Connection

One ``azure.servicebus`` client per namespace and bearer token, speaking
AMQP over WebSocket by default. The token reaches the SDK through a fixed
credential; the SDK runs the CBS put-token handshake for an entity when the
first receiver or sender on it opens.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import base64
import binascii
import json
import time
from typing import Any, Callable, List, Optional

from azure.core.credentials import AccessToken
from azure.servicebus import ServiceBusReceiveMode, ServiceBusSubQueue, TransportType
from azure.servicebus.aio import ServiceBusClient, ServiceBusReceiver, ServiceBusSender

from .config import ClientConfig
from .constants import DEFAULT_TOKEN_LIFETIME
from .exceptions import ServiceBusConnectionError
from .logging_utils import StructuredLogger
from .models import EntityDescriptor, namespace_host


logger = StructuredLogger('sbexplorer.connection')

ClientFactory = Callable[..., ServiceBusClient]


def token_expiry(token: str) -> int:
    """
    Expiry of a bearer token in epoch seconds.

    Read from the ``exp`` claim of a JWT; opaque tokens are assumed valid
    for an hour from now.
    """
    parts = token.split('.')
    if len(parts) == 3:
        payload = parts[1] + '=' * (-len(parts[1]) % 4)
        try:
            claims = json.loads(base64.urlsafe_b64decode(payload))
        except (binascii.Error, ValueError):
            claims = None
        if isinstance(claims, dict) and isinstance(claims.get('exp'), (int, float)):
            return int(claims['exp'])
    return int(time.time()) + DEFAULT_TOKEN_LIFETIME


class BearerTokenCredential:
    """
    Async token credential returning a token acquired elsewhere.

    Token acquisition and refresh belong to the caller; the SDK asks this
    credential whenever it authorizes an entity and always gets the same
    token back.
    """

    def __init__(self, token: str):
        self.token = token
        self.expires_on = token_expiry(token)

    async def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return AccessToken(self.token, self.expires_on)

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "BearerTokenCredential":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()


class ServiceBusConnection:
    """
    SDK client for one namespace plus the receivers and senders opened on it.

    Usage:
        async with ServiceBusConnection(namespace, token, config) as conn:
            receiver = conn.receiver(entity)
            ...
    """

    def __init__(
        self,
        namespace: str,
        token: str,
        config: Optional[ClientConfig] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.host = namespace_host(namespace)
        self.credential = BearerTokenCredential(token)
        self.config = config or ClientConfig()
        self.client: Optional[ServiceBusClient] = None
        self._client_factory = client_factory or ServiceBusClient
        self._handlers: List[Any] = []

    @property
    def is_open(self) -> bool:
        return self.client is not None

    def open(self) -> None:
        """Create the SDK client; receivers and senders open on their first operation."""
        if self.client is not None:
            return
        settings = self.config.connection
        self.client = self._client_factory(
            fully_qualified_namespace=self.host,
            credential=self.credential,
            transport_type=TransportType.AmqpOverWebsocket if settings.websocket else TransportType.Amqp,
            retry_total=settings.retry_total,
            retry_backoff_factor=settings.retry_backoff_factor,
            retry_backoff_max=settings.retry_backoff_max,
            logging_enable=settings.logging_enable,
        )
        logger.debug("Connection opened", host=self.host, websocket=settings.websocket)

    def _require_client(self) -> ServiceBusClient:
        if self.client is None:
            raise ServiceBusConnectionError(reason="not connected", host=self.host)
        return self.client

    def receiver(
        self,
        entity: EntityDescriptor,
        receive_mode: ServiceBusReceiveMode = ServiceBusReceiveMode.PEEK_LOCK,
        prefetch_count: int = 0,
    ) -> ServiceBusReceiver:
        """Receiver on the entity (or its dead-letter sub-queue), owned by this connection."""
        client = self._require_client()
        sub_queue = ServiceBusSubQueue.DEAD_LETTER if entity.dead_letter else None
        if entity.queue:
            receiver = client.get_queue_receiver(
                entity.queue,
                sub_queue=sub_queue,
                receive_mode=receive_mode,
                prefetch_count=prefetch_count,
            )
        else:
            receiver = client.get_subscription_receiver(
                entity.topic,
                entity.subscription,
                sub_queue=sub_queue,
                receive_mode=receive_mode,
                prefetch_count=prefetch_count,
            )
        self._handlers.append(receiver)
        return receiver

    def sender(self, entity: EntityDescriptor) -> ServiceBusSender:
        """Sender on the entity's queue or topic, owned by this connection."""
        client = self._require_client()
        if entity.queue:
            sender = client.get_queue_sender(entity.queue)
        else:
            sender = client.get_topic_sender(entity.topic)
        self._handlers.append(sender)
        return sender

    async def release(self, handler: Any) -> None:
        """Close one receiver or sender before the connection itself closes."""
        if handler in self._handlers:
            self._handlers.remove(handler)
            await handler.close()

    async def close(self) -> None:
        """Close every handler and the SDK client (idempotent)."""
        handlers, self._handlers = self._handlers, []
        client, self.client = self.client, None
        for handler in handlers:
            await handler.close()
        if client is not None:
            await client.close()
            logger.debug("Connection closed", host=self.host, handlers=len(handlers))

    async def __aenter__(self) -> "ServiceBusConnection":
        self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()


def open_connection(
    namespace: str,
    token: str,
    config: Optional[ClientConfig] = None,
    client_factory: Optional[ClientFactory] = None,
) -> ServiceBusConnection:
    """Open a connection the caller owns and must close."""
    connection = ServiceBusConnection(namespace, token, config, client_factory)
    connection.open()
    return connection

"""Adapter composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from loguru import logger

from qms_adapter.app.application.usage_forwarder import UsageForwarder
from qms_adapter.app.config.settings import Settings
from qms_adapter.app.infrastructure.http.factory import create_http_client
from qms_adapter.app.infrastructure.messaging.factory import create_message_channel
from qms_adapter.app.messaging.consumer import UsageConsumer
from qms_adapter.app.ports.http_client import AbstractHttpClient
from qms_adapter.app.ports.message_channel import MessageChannel


class AdapterDependencies:
    """Holds wired adapter dependencies and their lifecycle."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._channel: MessageChannel | None = None
        self._http_client: AbstractHttpClient | None = None
        self._forwarder: UsageForwarder | None = None
        self._consumer: UsageConsumer | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def channel(self) -> MessageChannel:
        if self._channel is None:
            raise RuntimeError("channel is not initialized")
        return self._channel

    @property
    def forwarder(self) -> UsageForwarder:
        if self._forwarder is None:
            raise RuntimeError("forwarder is not initialized")
        return self._forwarder

    @property
    def consumer(self) -> UsageConsumer:
        if self._consumer is None:
            raise RuntimeError("consumer is not initialized")
        return self._consumer

    async def connect(self) -> None:
        settings = self._settings
        self._channel = create_message_channel(settings)
        await self._channel.connect()

        if settings.qms_enabled:
            self._http_client = create_http_client(settings)
        self._forwarder = UsageForwarder(
            self._http_client,
            enabled=settings.qms_enabled,
            endpoint=settings.qms_endpoint,
            user_domain=settings.user_domain,
            connect_timeout_seconds=settings.qms_connect_timeout_seconds,
            read_timeout_seconds=settings.qms_read_timeout_seconds,
        )
        self._consumer = UsageConsumer(
            ack_mode=settings.ack_mode,
            handler_timeout_seconds=settings.handler_timeout_seconds,
        )

    async def start(self) -> str:
        """Bind the consumer to the configured queue; returns the consumer tag."""
        return await self.consumer.start(
            self.channel,
            self._settings.queue_binding,
            self.forwarder,
            self._settings.prefetch_count,
        )

    async def close(self) -> None:
        if self._consumer is not None:
            try:
                await self._consumer.close()
            except Exception as exc:
                logger.warning("consumer close failed: {}", exc)
            self._consumer = None

        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception as exc:
                logger.warning("channel close failed: {}", exc)
            self._channel = None

        if self._http_client is not None:
            try:
                await self._http_client.close()
            except Exception as exc:
                logger.warning("http client close failed: {}", exc)
            self._http_client = None

        self._forwarder = None


def create_adapter_dependencies(settings: Settings | None = None) -> AdapterDependencies:
    return AdapterDependencies(settings=settings or Settings())

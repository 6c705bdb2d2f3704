"""Message channel factory: selects implementation from config. Only place that imports concrete channels."""
from __future__ import annotations

from qms_adapter.app.config.settings import Settings
from qms_adapter.app.infrastructure.messaging.inmemory.in_memory_channel import InMemoryChannel
from qms_adapter.app.infrastructure.messaging.rabbitmq.rabbitmq_channel import RabbitMQChannel
from qms_adapter.app.ports.message_channel import MessageChannel


def create_message_channel(settings: Settings) -> MessageChannel:
    backend = settings.consumer_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQChannel(settings)

    if backend == "inmemory":
        return InMemoryChannel()

    raise ValueError(f"Unsupported consumer backend: {backend}")

# Abstract transport shared by every pub/sub backend.
# Exactly one concrete adapter is created per process (see factory.py).

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Union
import json

from ..utils.exceptions import TransportError

MessageHandler = Callable[[str, bytes], Awaitable[None]]
Payload = Union[bytes, str, Dict[str, Any], list]


class PublishResult:
    """Outcome of a publish: ok, or the TransportError that prevented it"""
    __slots__ = ("topic", "error")

    def __init__(self, topic: str, error: Optional[TransportError] = None):
        self.topic = topic
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, topic: str) -> "PublishResult":
        return cls(topic)

    @classmethod
    def failure(cls, topic: str, error: TransportError) -> "PublishResult":
        return cls(topic, error)

    def __repr__(self) -> str:
        return f"PublishResult(topic={self.topic!r}, ok={self.ok}, error={self.error!r})"


def encode_payload(payload: Payload) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, (dict, list)):
        payload = json.dumps(payload)
    return str(payload).encode()


class TransportAdapter(ABC):
    """
    Uniform publish/subscribe/connect-state interface.
    Delivery is not exactly-once: consumers must tolerate duplicates and
    reordering. publish never queues while disconnected.
    """

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def publish(self, topic: str, payload: Payload, qos: Optional[int] = None,
                      retain: bool = False) -> PublishResult:
        pass

    @abstractmethod
    async def subscribe(self, topic_pattern: str) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def set_message_handler(self, handler: MessageHandler) -> None:
        """Handler receives every inbound (topic, payload) pair"""
        pass

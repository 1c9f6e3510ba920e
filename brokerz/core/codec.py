"""
Serialization boundary between value types and backends.

Drivers never call ``json`` directly: they encode and decode through a
MessageCodec. JSONCodec is the only implementation and produces

- canonical JSON (sorted keys, compact separators) for publish_json,
- the KV wire envelope for messages::

    {"id", "topic", "payload", "headers", "timestamp", "retry_count",
     "max_retries", "metadata"}  (+ "execute_at", "delay" when delayed)

- a job envelope (Job.to_dict()) for job queues,
- string header values for metadata carried in backend headers.

Payload bytes that are not valid UTF-8 survive the envelope round-trip.
"""

import json
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from brokerz.core.exceptions import SerializationError
from brokerz.core.types import Job, Message

_PAYLOAD_ERRORS = "surrogateescape"


class BrokerEncoder(json.JSONEncoder):
    """
    JSON encoder for payloads and metadata.

    Handles:
    - datetime/date -> ISO format string
    - UUID, Decimal -> string
    - Enum -> value
    - set/frozenset -> list
    - bytes -> UTF-8 text
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, UUID | Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, set | frozenset):
            return sorted(obj, key=repr)
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors=_PAYLOAD_ERRORS)
        return super().default(obj)


class MessageCodec(Protocol):
    content_type: str

    def dumps(self, value: Any) -> bytes: ...

    def loads(self, data: bytes | str) -> Any: ...

    def encode_message(self, message: Message, **extra: Any) -> bytes: ...

    def decode_message(self, data: bytes | str, topic: str | None = None) -> Message: ...

    def encode_job(self, job: Job) -> bytes: ...

    def decode_job(self, data: bytes | str) -> Job: ...

    def encode_header_value(self, value: Any) -> str: ...

    def decode_header_value(self, value: str | bytes) -> Any: ...


class JSONCodec:
    """JSON implementation of MessageCodec."""

    content_type = "application/json"

    def dumps(self, value: Any) -> bytes:
        """
        Canonical JSON encoding.

        Raises:
            SerializationError: If the value cannot be encoded
        """
        try:
            text = json.dumps(
                value,
                cls=BrokerEncoder,
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
            )
        except (TypeError, ValueError) as e:
            msg = f"Failed to encode value: {e}"
            raise SerializationError(msg, type_name=type(value).__name__) from e
        return text.encode("utf-8", errors=_PAYLOAD_ERRORS)

    def loads(self, data: bytes | str) -> Any:
        if isinstance(data, bytes | bytearray):
            data = bytes(data).decode("utf-8", errors=_PAYLOAD_ERRORS)
        try:
            return json.loads(data)
        except ValueError as e:
            msg = f"Failed to decode JSON: {e}"
            raise SerializationError(msg, type_name="str") from e

    def encode_message(self, message: Message, **extra: Any) -> bytes:
        """Encode a message into the KV wire envelope, field order preserved."""
        envelope = {
            "id": message.id,
            "topic": message.topic,
            "payload": message.payload.decode("utf-8", errors=_PAYLOAD_ERRORS),
            "headers": message.headers,
            "timestamp": int(message.timestamp.timestamp()),
            "retry_count": message.retry_count,
            "max_retries": message.max_retries,
            "metadata": message.metadata,
        }
        envelope.update(extra)
        try:
            text = json.dumps(
                envelope, cls=BrokerEncoder, separators=(",", ":"), ensure_ascii=False
            )
        except (TypeError, ValueError) as e:
            msg = f"Failed to encode message {message.id}: {e}"
            raise SerializationError(msg, type_name="Message") from e
        return text.encode("utf-8", errors=_PAYLOAD_ERRORS)

    def decode_message(self, data: bytes | str, topic: str | None = None) -> Message:
        """
        Rebuild a Message from the wire envelope.

        ``execute_at`` and ``delay`` are dropped. ``topic`` is used when the
        envelope carries none.
        """
        envelope = self.loads(data)
        if not isinstance(envelope, dict):
            msg = "Message envelope must be a JSON object"
            raise SerializationError(msg, type_name=type(envelope).__name__)
        try:
            return Message(
                id=envelope.get("id") or "",
                topic=envelope.get("topic") or topic or "",
                payload=(envelope.get("payload") or "").encode("utf-8", errors=_PAYLOAD_ERRORS),
                headers={str(k): str(v) for k, v in (envelope.get("headers") or {}).items()},
                metadata=dict(envelope.get("metadata") or {}),
                timestamp=_from_unix(envelope.get("timestamp")),
                retry_count=int(envelope.get("retry_count", 0)),
                max_retries=int(envelope.get("max_retries", 3)),
            )
        except (TypeError, ValueError) as e:
            msg = f"Invalid message envelope: {e}"
            raise SerializationError(msg, type_name="Message") from e

    def encode_job(self, job: Job) -> bytes:
        return self.dumps(job.to_dict())

    def decode_job(self, data: bytes | str) -> Job:
        body = self.loads(data)
        try:
            return Job.from_dict(body)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            msg = f"Invalid job envelope: {e}"
            raise SerializationError(msg, type_name="Job") from e

    def encode_header_value(self, value: Any) -> str:
        return self.dumps(value).decode("utf-8", errors=_PAYLOAD_ERRORS)

    def decode_header_value(self, value: str | bytes) -> Any:
        """Decode a header written by encode_header_value; foreign text is kept as-is."""
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors=_PAYLOAD_ERRORS)
        try:
            return json.loads(value)
        except ValueError:
            return value


def _from_unix(value: Any) -> datetime:
    if value is None:
        return datetime.now(UTC)
    return datetime.fromtimestamp(int(value), UTC)


def format_duration(seconds: float) -> str:
    """
    Human-readable duration in the style of ``1h2m3s``, ``1m30s``, ``500ms``.
    """
    if seconds <= 0:
        return "0s"
    if seconds < 1:
        ms = seconds * 1000
        if ms >= 1:
            return f"{ms:g}ms"
        return f"{seconds * 1_000_000:g}µs"

    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    secs_text = f"{secs:.3f}".rstrip("0").rstrip(".")
    if hours:
        return f"{int(hours)}h{int(minutes)}m{secs_text}s"
    if minutes:
        return f"{int(minutes)}m{secs_text}s"
    return f"{secs_text}s"


default_codec = JSONCodec()

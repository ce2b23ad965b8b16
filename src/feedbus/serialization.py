"""EnvelopeSerializer — JSON roundtrip for MessageEnvelope."""

from __future__ import annotations

import json

from pydantic import ValidationError

from .envelope import MessageEnvelope
from .exceptions import MessagingSerializationError

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"


class EnvelopeSerializer:
    """Serialize/deserialize MessageEnvelope to/from UTF-8 JSON bytes.

    Wire field names are the envelope aliases (``id``, ``type``, ...) and the
    camelCase payload aliases.
    """

    def serialize(self, envelope: MessageEnvelope) -> bytes:
        """Encode envelope to JSON bytes."""
        try:
            data = envelope.model_dump(mode="json", by_alias=True)
            return json.dumps(data, separators=(",", ":")).encode(CONTENT_ENCODING)
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def deserialize(self, raw: bytes) -> MessageEnvelope:
        """Decode JSON bytes to MessageEnvelope.

        Any decoding, JSON or schema problem is reported as
        MessagingSerializationError; such messages are permanently malformed.
        """
        try:
            data = json.loads(raw.decode(CONTENT_ENCODING))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessagingSerializationError(f"Malformed message body: {e}") from e
        if not isinstance(data, dict):
            raise MessagingSerializationError(
                f"Expected a JSON object, got {type(data).__name__}"
            )
        try:
            return MessageEnvelope.model_validate(data)
        except ValidationError as e:
            raise MessagingSerializationError(f"Invalid envelope: {e}") from e

"""Per-entity payload codecs.

The engine moves payloads around as opaque JSON objects. Domain code that wants
typed payloads registers a codec for its entity type; the engine only calls
`encode` on the way in and hands `decode` to readers that ask for it.
"""

from __future__ import annotations

import json
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)


class PayloadCodecError(ValueError):
    pass


class PayloadCodec(Protocol):
    def encode(self, value: Any) -> dict[str, Any]: ...

    def decode(self, payload: dict[str, Any]) -> Any: ...


class JsonObjectCodec:
    """Default codec: the payload must already be a JSON-serializable object."""

    def encode(self, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            raise PayloadCodecError(f"payload must be a JSON object, got {type(value).__name__}")
        try:
            # Round-trip so the stored blob never holds non-JSON values.
            return json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise PayloadCodecError(f"payload is not JSON serializable: {e}") from e

    def decode(self, payload: dict[str, Any]) -> dict[str, Any]:
        return dict(payload)


class PydanticCodec(Generic[M]):
    def __init__(self, model: type[M]) -> None:
        self._model = model

    def encode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, self._model):
            return value.model_dump(mode="json")
        if isinstance(value, dict):
            try:
                return self._model.model_validate(value).model_dump(mode="json")
            except ValidationError as e:
                raise PayloadCodecError(f"invalid {self._model.__name__} payload: {e}") from e
        raise PayloadCodecError(
            f"expected {self._model.__name__} or dict, got {type(value).__name__}"
        )

    def decode(self, payload: dict[str, Any]) -> M:
        return self._model.model_validate(payload)


class CodecRegistry:
    def __init__(self, default: PayloadCodec | None = None) -> None:
        self._default: PayloadCodec = default or JsonObjectCodec()
        self._codecs: dict[str, PayloadCodec] = {}

    def register(self, entity_type: str, codec: PayloadCodec) -> None:
        self._codecs[entity_type] = codec

    def get(self, entity_type: str) -> PayloadCodec:
        return self._codecs.get(entity_type, self._default)

    def encode(self, entity_type: str, value: Any) -> dict[str, Any]:
        return self.get(entity_type).encode(value)

    def decode(self, entity_type: str, payload: dict[str, Any]) -> Any:
        return self.get(entity_type).decode(payload)

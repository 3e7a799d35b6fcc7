"""Messages exchanged between the kitchen and the pantry.

The broker carries exactly two kinds of message and each one travels on its
own routing key:

- ``kitchen.ingredient_request``: kitchen -> pantry, "reserve these for order N"
- ``pantry.ingredient_ready``: pantry -> kitchen, "order N has its ingredients"

Field names on the wire are camelCase, as the services have always spoken.
"""
from __future__ import annotations

import json
import uuid
from typing import Annotated, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter, ValidationError

INGREDIENT_REQUEST_KEY = "kitchen.ingredient_request"
INGREDIENT_READY_KEY = "pantry.ingredient_ready"


class MalformedMessage(ValueError):
    """Raised when a delivery cannot be turned into a known message."""


class IngredientRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: Literal["ingredient_request"] = "ingredient_request"
    request_id: str = Field(..., alias="requestId", min_length=1)
    order_id: PositiveInt = Field(..., alias="orderId")
    required_ingredients: Dict[str, PositiveInt] = Field(..., alias="recipeSnapshot", min_length=1)


class IngredientReady(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: Literal["ingredient_ready"] = "ingredient_ready"
    request_id: str = Field(..., alias="requestId", min_length=1)
    order_id: PositiveInt = Field(..., alias="orderId")
    available_ingredients: Dict[str, PositiveInt] = Field(..., alias="availableIngredients")


Message = Annotated[Union[IngredientRequest, IngredientReady], Field(discriminator="kind")]

_MESSAGE_ADAPTER = TypeAdapter(Message)

ROUTING_KEYS: Dict[str, str] = {
    "ingredient_request": INGREDIENT_REQUEST_KEY,
    "ingredient_ready": INGREDIENT_READY_KEY,
}
_KINDS_BY_ROUTING_KEY = {key: kind for kind, key in ROUTING_KEYS.items()}


def new_request_id() -> str:
    return str(uuid.uuid4())


def routing_key_for(message: Union[IngredientRequest, IngredientReady]) -> str:
    return ROUTING_KEYS[message.kind]


def encode_message(message: Union[IngredientRequest, IngredientReady]) -> bytes:
    payload = message.model_dump(mode="json", by_alias=True)
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def decode_message(routing_key: str, body: bytes) -> Union[IngredientRequest, IngredientReady]:
    """Parse a raw delivery.

    The routing key decides the kind; a ``kind`` field in the body, when
    present, must agree with it.
    """
    kind = _KINDS_BY_ROUTING_KEY.get(routing_key)
    if kind is None:
        raise MalformedMessage(f"unknown_routing_key:{routing_key}")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"invalid_json:{e}") from e
    if not isinstance(payload, dict):
        raise MalformedMessage("payload_not_an_object")

    if payload.setdefault("kind", kind) != kind:
        raise MalformedMessage(f"kind_mismatch:{payload['kind']}:{routing_key}")

    try:
        return _MESSAGE_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise MalformedMessage(f"invalid_{kind}:{e.error_count()} error(s)") from e

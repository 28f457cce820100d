"""Job payload / params tagged unions and their JSON codec.

Every variant carries a ``kind`` discriminator, e.g.::

    {"kind": "Noop"}
    {"kind": "SendEmail", "email": "user@example.com"}
    {"kind": "FollowUp", "value": true}

Decoding is strict and fail-fast: an unknown or missing ``kind``, a missing,
mistyped or extra field, or malformed JSON raises ``DecodeError``.  A new
variant therefore needs a code change here before any worker can read it.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, TypeAdapter, ValidationError

from rowqueue.errors import DecodeError


class _Variant(BaseModel):
    # Strictness lives on the field types; nested variants must accept dicts.
    model_config = ConfigDict(frozen=True, extra="forbid")


# ── Payload variants ────────────────────────────────────────────


class NoopPayload(_Variant):
    kind: Literal["Noop"] = "Noop"


class SendEmailPayload(_Variant):
    kind: Literal["SendEmail"] = "SendEmail"
    email: StrictStr = Field(min_length=1)


Payload = Annotated[Union[NoopPayload, SendEmailPayload], Field(discriminator="kind")]


# ── Params variants ─────────────────────────────────────────────


class NoopParams(_Variant):
    kind: Literal["Noop"] = "Noop"


class FollowUpParams(_Variant):
    kind: Literal["FollowUp"] = "FollowUp"
    value: StrictBool


Params = Annotated[Union[NoopParams, FollowUpParams], Field(discriminator="kind")]


_payload_adapter: TypeAdapter[Payload] = TypeAdapter(Payload)
_params_adapter: TypeAdapter[Params] = TypeAdapter(Params)


def _first_error(err: ValidationError) -> str:
    first = err.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{first.get('msg', 'invalid value')} at {loc}"


# ── bytes codec ─────────────────────────────────────────────────


def encode_payload(payload: NoopPayload | SendEmailPayload) -> bytes:
    return _payload_adapter.dump_json(payload)


def decode_payload(data: bytes | str, *, job_id: int | None = None) -> NoopPayload | SendEmailPayload:
    try:
        return _payload_adapter.validate_json(data)
    except ValidationError as err:
        raise DecodeError(_first_error(err), job_id=job_id, field="payload") from err


def encode_params(params: NoopParams | FollowUpParams) -> bytes:
    return _params_adapter.dump_json(params)


def decode_params(data: bytes | str, *, job_id: int | None = None) -> NoopParams | FollowUpParams:
    try:
        return _params_adapter.validate_json(data)
    except ValidationError as err:
        raise DecodeError(_first_error(err), job_id=job_id, field="params") from err


# ── JSON-column codec (driver already parsed the JSON) ──────────


def payload_to_json(payload: NoopPayload | SendEmailPayload) -> dict[str, Any]:
    return _payload_adapter.dump_python(payload, mode="json")


def payload_from_json(value: Any, *, job_id: int | None = None) -> NoopPayload | SendEmailPayload:
    if value is None:
        raise DecodeError("payload is missing", job_id=job_id, field="payload")
    try:
        return _payload_adapter.validate_python(value)
    except ValidationError as err:
        raise DecodeError(_first_error(err), job_id=job_id, field="payload") from err


def params_to_json(params: NoopParams | FollowUpParams | None) -> dict[str, Any] | None:
    if params is None:
        return None
    return _params_adapter.dump_python(params, mode="json")


def params_from_json(value: Any, *, job_id: int | None = None) -> NoopParams | FollowUpParams | None:
    if value is None:
        return None
    try:
        return _params_adapter.validate_python(value)
    except ValidationError as err:
        raise DecodeError(_first_error(err), job_id=job_id, field="params") from err

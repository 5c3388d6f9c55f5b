# chronokey/core/codec/marker.py
"""Encoding of marker payloads stored alongside TTL markers."""

from __future__ import annotations

from typing import Union

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from chronokey.core.errors import DecodeError, ErrorCode, JobValidationError
from chronokey.core.models.schedule import MarkerPayload


def encode_payload(payload: MarkerPayload) -> str:
    """
    Serialize a MarkerPayload to a compact JSON string.

    Raises:
        JobValidationError: the job definition holds values with no JSON
            representation. Raised before anything is written to the store.
    """
    try:
        return payload.model_dump_json()
    except PydanticSerializationError as e:
        raise JobValidationError(
            message='job definition is not JSON-serializable',
            code=ErrorCode.JOB_INVALID_DATA,
            notes=[f'schedule_id={payload.schedule_id}', str(e)],
            help_text='job data must contain only JSON-compatible values',
        ) from e


def decode_payload(raw: Union[str, bytes, None], schedule_id: str) -> MarkerPayload:
    """
    Deserialize a stored marker payload.

    Args:
        raw: Value read from the payload key
        schedule_id: Identifier taken from the expired key name; must match
            the id recorded inside the payload

    Raises:
        DecodeError: empty, malformed, or mismatched payload
    """
    if raw is None or raw == b'' or raw == '':
        raise DecodeError(
            message='marker payload is empty',
            code=ErrorCode.MARKER_UNDECODABLE,
            schedule_id=schedule_id,
        )

    try:
        payload = MarkerPayload.model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(
            message='marker payload could not be decoded',
            code=ErrorCode.MARKER_UNDECODABLE,
            notes=[f'schedule_id={schedule_id}', f'{e.error_count()} validation error(s)'],
            help_text='the payload was written by an incompatible version or corrupted',
            schedule_id=schedule_id,
        ) from e

    if payload.schedule_id != schedule_id:
        raise DecodeError(
            message='marker payload belongs to a different schedule',
            code=ErrorCode.MARKER_UNDECODABLE,
            notes=[
                f'key schedule_id={schedule_id}',
                f'payload schedule_id={payload.schedule_id}',
            ],
            schedule_id=schedule_id,
        )

    return payload

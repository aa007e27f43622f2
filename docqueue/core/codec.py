"""
Codec — serialize and deserialize JobRecord using Pydantic v2.

Two representations are supported:

  encode / decode               — UTF-8 JSON bytes (payload as base64)
  to_document / from_document   — the store's native document (payload as bytes,
                                  datetimes as datetime, status as its string value)

Wire format (produced by encode):
---------------------------------
{
  "status": "ready",
  "job_id": "J1",
  "queue": "emails",
  "payload": "SGVsbG8gV29ybGQ=",   <-- base64-encoded bytes
  "created_at": "2024-01-01T00:00:00Z",
  "heartbeat_at": null
}

Decoding never falls back to defaults for bad data: an unknown status or a
missing field raises DecodingError, since silently accepting it could hide a
protocol bug elsewhere.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from docqueue.domain.errors import DecodingError, EncodingError
from docqueue.domain.models import JobRecord


def encode(record: JobRecord) -> bytes:
    """Serialize a JobRecord to deterministic UTF-8 JSON bytes."""
    try:
        return record.model_dump_json().encode("utf-8")
    except (ValueError, TypeError) as exc:
        raise EncodingError(f"Cannot encode job {record.job_id!r}", exc) from exc


def decode(data: bytes) -> JobRecord:
    """Deserialize UTF-8 JSON bytes to a JobRecord."""
    try:
        return JobRecord.model_validate_json(data)
    except ValidationError as exc:
        raise DecodingError("Cannot decode job record", exc) from exc


def to_document(record: JobRecord) -> dict[str, Any]:
    """Build the document stored in the collection for `record`."""
    try:
        document = record.model_dump(mode="python")
    except (ValueError, TypeError) as exc:
        raise EncodingError(f"Cannot encode job {record.job_id!r}", exc) from exc
    document["status"] = record.status.value
    return document


def from_document(document: Mapping[str, Any]) -> JobRecord:
    """Validate a stored document. Store-assigned keys such as _id are ignored."""
    try:
        return JobRecord.model_validate(dict(document))
    except ValidationError as exc:
        raise DecodingError(
            f"Cannot decode document {document.get('_id')!r}", exc
        ) from exc

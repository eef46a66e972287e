"""Multipart write requests <-> text records for the queue store.

A payload is an ordered list of fields. Text fields keep their string;
blob fields keep filename, content type and bytes. Bytes are stored as
base64 together with their SHA-256 so that a damaged record is detected
on decode instead of being replayed with wrong content.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from core.errors import CorruptPayloadError


FORMAT_VERSION = 1
# Payloads above this size are encoded off the event loop.
LARGE_PAYLOAD_BYTES = 256 * 1024


@dataclass(frozen=True)
class TextField:
    name: str
    value: str


@dataclass(frozen=True)
class BlobField:
    name: str
    content: bytes
    content_type: str = "application/octet-stream"
    filename: Optional[str] = None


Field = Union[TextField, BlobField]
FileSpec = Tuple[Optional[str], bytes, str]


def payload_from_form(
    data: Union[Mapping[str, Any], Sequence[Tuple[str, Any]], None] = None,
    files: Union[Mapping[str, FileSpec], Sequence[Tuple[str, FileSpec]], None] = None,
) -> List[Field]:
    """Build a payload from httpx-style ``data`` and ``files`` arguments."""

    fields: List[Field] = []
    for name, value in _pairs(data):
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            fields.append(TextField(name=str(name), value=str(item)))
    for name, spec in _pairs(files):
        filename, content, content_type = spec
        fields.append(
            BlobField(
                name=str(name),
                content=bytes(content),
                content_type=content_type or "application/octet-stream",
                filename=filename,
            )
        )
    return fields


def _pairs(source) -> Iterable[Tuple[str, Any]]:
    if not source:
        return []
    if isinstance(source, Mapping):
        return list(source.items())
    return list(source)


def encode_payload(fields: Sequence[Field]) -> str:
    items: List[Dict[str, Any]] = []
    for field in fields:
        if isinstance(field, TextField):
            items.append({"kind": "text", "name": field.name, "value": field.value})
        elif isinstance(field, BlobField):
            items.append(
                {
                    "kind": "blob",
                    "name": field.name,
                    "filename": field.filename,
                    "content_type": field.content_type,
                    "sha256": hashlib.sha256(field.content).hexdigest(),
                    "data": base64.b64encode(field.content).decode("ascii"),
                }
            )
        else:
            raise TypeError(f"Unsupported payload field: {field!r}")
    return json.dumps({"v": FORMAT_VERSION, "fields": items}, ensure_ascii=False)


def decode_payload(text: str) -> List[Field]:
    try:
        document = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise CorruptPayloadError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(document, dict) or document.get("v") != FORMAT_VERSION:
        raise CorruptPayloadError("Unknown payload format")
    raw_fields = document.get("fields")
    if not isinstance(raw_fields, list):
        raise CorruptPayloadError("Payload has no field list")

    fields: List[Field] = []
    for item in raw_fields:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise CorruptPayloadError("Malformed payload field")
        kind = item.get("kind")
        if kind == "text":
            value = item.get("value")
            if not isinstance(value, str):
                raise CorruptPayloadError(f"Text field {item['name']} has no value")
            fields.append(TextField(name=item["name"], value=value))
        elif kind == "blob":
            fields.append(_decode_blob(item))
        else:
            raise CorruptPayloadError(f"Unknown field kind: {kind!r}")
    return fields


def _decode_blob(item: Dict[str, Any]) -> BlobField:
    try:
        content = base64.b64decode(item.get("data") or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CorruptPayloadError(f"Blob field {item['name']} is not valid base64") from exc
    expected = item.get("sha256")
    if expected and hashlib.sha256(content).hexdigest() != expected:
        raise CorruptPayloadError(f"Blob field {item['name']} failed its checksum")
    return BlobField(
        name=item["name"],
        content=content,
        content_type=item.get("content_type") or "application/octet-stream",
        filename=item.get("filename"),
    )


def _payload_size(fields: Sequence[Field]) -> int:
    return sum(len(f.content) for f in fields if isinstance(f, BlobField))


async def encode_payload_async(fields: Sequence[Field]) -> str:
    if _payload_size(fields) < LARGE_PAYLOAD_BYTES:
        return encode_payload(fields)
    return await asyncio.to_thread(encode_payload, fields)


async def decode_payload_async(text: str) -> List[Field]:
    if len(text) < LARGE_PAYLOAD_BYTES:
        return decode_payload(text)
    return await asyncio.to_thread(decode_payload, text)


def to_request_parts(fields: Sequence[Field]) -> Tuple[Dict[str, Any], List[Tuple[str, FileSpec]]]:
    """Return ``(data, files)`` ready for ``httpx`` multipart submission.

    httpx writes every ``data`` part before the ``files`` parts, so a stored
    payload that interleaves text and blobs goes out grouped by kind. Order
    within each kind is kept; the job endpoints read fields by name.
    """

    data: Dict[str, Any] = {}
    files: List[Tuple[str, FileSpec]] = []
    for field in fields:
        if isinstance(field, TextField):
            if field.name in data:
                existing = data[field.name]
                data[field.name] = (existing if isinstance(existing, list) else [existing]) + [field.value]
            else:
                data[field.name] = field.value
        else:
            files.append((field.name, (field.filename or field.name, field.content, field.content_type)))
    return data, files


JSON_FIELD = "__json__"


def is_json_payload(fields: Sequence[Field]) -> bool:
    """A single ``__json__`` text field marks a JSON body instead of a form."""

    return len(fields) == 1 and isinstance(fields[0], TextField) and fields[0].name == JSON_FIELD


def json_payload(body: Mapping[str, Any]) -> List[Field]:
    return [TextField(name=JSON_FIELD, value=json.dumps(dict(body), ensure_ascii=False))]


__all__ = [
    "BlobField",
    "Field",
    "JSON_FIELD",
    "TextField",
    "decode_payload",
    "decode_payload_async",
    "encode_payload",
    "encode_payload_async",
    "is_json_payload",
    "json_payload",
    "payload_from_form",
    "to_request_parts",
]

"""
Request/response encoding for the table service.

This module provides:
- serialize_entity / deserialize_entity: JSON entity payloads with
  `@odata.type` annotations for types JSON cannot carry
- entity_path: Resource path of one entity
- build_batch_body / parse_batch_response: multipart/mixed batch payloads
- parse_error_body: Service error code and message from an error payload
"""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote
from uuid import UUID, uuid4

from .errors import ServiceError, StorageError
from .models import EdmType, EntityProperty, TableEntity, TableOperation

PARTITION_KEY = "PartitionKey"
ROW_KEY = "RowKey"
TIMESTAMP = "Timestamp"
ODATA_ETAG = "odata.etag"
ODATA_TYPE_SUFFIX = "@odata.type"

JSON_CONTENT_TYPE = "application/json"
ACCEPT_MINIMAL_METADATA = "application/json;odata=minimalmetadata"

# Types that JSON carries natively and the service infers without annotation.
_UNANNOTATED = (EdmType.STRING, EdmType.BOOLEAN, EdmType.INT32)

_EDM_BY_NAME = {edm.value: edm for edm in EdmType}
_FRACTION = re.compile(r"\.(\d+)")
_ETAG_TIMESTAMP = re.compile(r"datetime'([^']+)'")


# =============================================================================
# Entities
# =============================================================================


def serialize_entity(
    partition_key: str,
    row_key: str,
    properties: Dict[str, Optional[EntityProperty]],
) -> bytes:
    """Encode an entity as a JSON request body."""
    payload: Dict[str, Any] = {PARTITION_KEY: partition_key, ROW_KEY: row_key}

    for name, prop in properties.items():
        if prop is None or prop.is_null:
            payload[name] = None
            continue
        if prop.edm_type not in _UNANNOTATED:
            payload[name + ODATA_TYPE_SUFFIX] = prop.edm_type.value
        payload[name] = _to_json_value(prop)

    return json.dumps(payload).encode("utf-8")


def deserialize_entity(payload: Dict[str, Any]) -> TableEntity:
    """Decode a JSON entity as returned by the service."""
    properties: Dict[str, EntityProperty] = {}

    for name, value in payload.items():
        if name in (PARTITION_KEY, ROW_KEY, TIMESTAMP) or name.startswith("odata."):
            continue
        if name.endswith(ODATA_TYPE_SUFFIX):
            continue

        type_name = payload.get(name + ODATA_TYPE_SUFFIX)
        if type_name is not None:
            properties[name] = _from_json_value(_EDM_BY_NAME[type_name], value)
        else:
            properties[name] = EntityProperty.from_value(value)

    timestamp = payload.get(TIMESTAMP)
    return TableEntity(
        partition_key=payload[PARTITION_KEY],
        row_key=payload[ROW_KEY],
        properties=properties,
        timestamp=parse_datetime(timestamp) if timestamp else None,
        etag=payload.get(ODATA_ETAG),
    )


def _to_json_value(prop: EntityProperty) -> Any:
    if prop.edm_type is EdmType.BINARY:
        return base64.standard_b64encode(prop.value).decode("ascii")
    if prop.edm_type is EdmType.INT64:
        return str(prop.value)
    if prop.edm_type is EdmType.DATETIME:
        return format_datetime(prop.value)
    if prop.edm_type is EdmType.GUID:
        return str(prop.value)
    return prop.value


def _from_json_value(edm_type: EdmType, value: Any) -> EntityProperty:
    if value is None:
        return EntityProperty(edm_type, None)
    if edm_type is EdmType.BINARY:
        value = base64.standard_b64decode(value)
    elif edm_type is EdmType.INT64:
        value = int(value)
    elif edm_type is EdmType.DOUBLE:
        value = float(value)
    elif edm_type is EdmType.DATETIME:
        value = parse_datetime(value)
    elif edm_type is EdmType.GUID:
        value = UUID(value)
    return EntityProperty(edm_type, value)


def format_datetime(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def parse_datetime(value: str) -> datetime:
    """Parse service timestamps, which carry up to seven fractional digits."""
    value = value.rstrip("Z")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_from_etag(etag: Optional[str]) -> Optional[datetime]:
    """Entity timestamp embedded in an ETag such as W/"datetime'2024-...Z'"."""
    if not etag:
        return None
    match = _ETAG_TIMESTAMP.search(unquote(etag))
    if match is None:
        return None
    return parse_datetime(match.group(1))


def entity_path(table_name: str, partition_key: str, row_key: str) -> str:
    return "/{}(PartitionKey='{}',RowKey='{}')".format(
        table_name, _quote_key(partition_key), _quote_key(row_key)
    )


def _quote_key(value: str) -> str:
    return quote(value.replace("'", "''"), safe="")


# =============================================================================
# Batches
# =============================================================================


@dataclass
class BatchSubRequest:
    """One sub-request of a batch, already encoded."""

    operation: TableOperation
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass
class BatchSubResponse:
    """One HTTP response extracted from a batch response body."""

    status: int
    reason: str
    headers: Dict[str, str]
    body: bytes

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def json(self) -> Dict[str, Any]:
        return json.loads(self.body.decode("utf-8"))


def build_batch_body(sub_requests: List[BatchSubRequest]) -> Tuple[bytes, str]:
    """
    Encode sub-requests as a multipart/mixed batch body.

    Consecutive writes share one changeset; retrieves are standalone parts.
    Parts appear in operation order.

    Returns:
        (body bytes, Content-Type header value)
    """
    batch_boundary = "batch_" + str(uuid4())
    lines: List[str] = []
    changeset: List[BatchSubRequest] = []
    content_id = 1

    def flush_changeset() -> None:
        nonlocal content_id
        if not changeset:
            return
        changeset_boundary = "changeset_" + str(uuid4())
        lines.append("--" + batch_boundary)
        lines.append("Content-Type: multipart/mixed; boundary=" + changeset_boundary)
        lines.append("")
        for sub in changeset:
            lines.append("--" + changeset_boundary)
            lines.extend(_http_part(sub, content_id))
            content_id += 1
        lines.append("--" + changeset_boundary + "--")
        changeset.clear()

    for sub in sub_requests:
        if sub.operation.operation_type.is_write:
            changeset.append(sub)
            continue
        flush_changeset()
        lines.append("--" + batch_boundary)
        lines.extend(_http_part(sub, None))

    flush_changeset()
    lines.append("--" + batch_boundary + "--")
    lines.append("")

    content_type = "multipart/mixed; boundary=" + batch_boundary
    return "\r\n".join(lines).encode("utf-8"), content_type


def _http_part(sub: BatchSubRequest, content_id: Optional[int]) -> List[str]:
    part = [
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        f"{sub.method} {sub.url} HTTP/1.1",
    ]
    if content_id is not None:
        part.append(f"Content-ID: {content_id}")
    for name, value in sub.headers.items():
        part.append(f"{name}: {value}")
    if sub.body is not None:
        part.append(f"Content-Length: {len(sub.body)}")
        part.append("")
        part.append(sub.body.decode("utf-8"))
    else:
        part.append("")
    part.append("")
    return part


def parse_batch_response(body: bytes, content_type: str) -> List[BatchSubResponse]:
    """
    Extract the HTTP sub-responses of a batch response, in body order.

    Nested changeset responses are flattened.
    """
    boundary = _boundary_of(content_type)
    if boundary is None:
        raise StorageError(f"Batch response has no multipart boundary: {content_type!r}")

    responses: List[BatchSubResponse] = []
    for part in _split_multipart(body, boundary):
        headers, content = _split_headers(part)
        part_type = headers.get("content-type", "")
        nested = _boundary_of(part_type)
        if nested is not None:
            responses.extend(parse_batch_response(content, part_type))
        elif part_type.startswith("application/http"):
            responses.append(_parse_http_response(content))
    return responses


def _boundary_of(content_type: str) -> Optional[str]:
    if not content_type.lower().startswith("multipart/"):
        return None
    for param in content_type.split(";")[1:]:
        name, _, value = param.strip().partition("=")
        if name.lower() == "boundary":
            return value.strip('"')
    return None


def _split_multipart(body: bytes, boundary: str) -> List[bytes]:
    delimiter = b"--" + boundary.encode("utf-8")
    parts = []
    for chunk in body.split(delimiter)[1:]:
        if chunk.startswith(b"--"):
            break
        parts.append(_strip_line_break(chunk))
    return parts


def _strip_line_break(chunk: bytes) -> bytes:
    if chunk.startswith(b"\r\n"):
        chunk = chunk[2:]
    elif chunk.startswith(b"\n"):
        chunk = chunk[1:]
    if chunk.endswith(b"\r\n"):
        chunk = chunk[:-2]
    elif chunk.endswith(b"\n"):
        chunk = chunk[:-1]
    return chunk


def _split_headers(block: bytes) -> Tuple[Dict[str, str], bytes]:
    normalized = block.replace(b"\r\n", b"\n")
    head, _, content = normalized.partition(b"\n\n")
    headers: Dict[str, str] = {}
    for line in head.decode("latin-1").split("\n"):
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return headers, content


def _parse_http_response(content: bytes) -> BatchSubResponse:
    normalized = content.replace(b"\r\n", b"\n")
    status_line, _, rest = normalized.partition(b"\n")
    # "HTTP/1.1 204 No Content"
    _, status, reason = (status_line.decode("latin-1").split(" ", 2) + ["", ""])[:3]
    if not status.isdigit():
        raise ServiceError(
            f"Malformed status line in batch response: {status_line!r}", retryable=False
        )
    headers, body = _split_headers(rest)
    return BatchSubResponse(
        status=int(status), reason=reason.strip(), headers=headers, body=body.strip()
    )


# =============================================================================
# Errors
# =============================================================================


def parse_error_body(body: bytes) -> Tuple[Optional[str], Optional[str]]:
    """Return (error code, message) from an `odata.error` JSON payload."""
    try:
        error = json.loads(body.decode("utf-8"))["odata.error"]
    except (ValueError, KeyError, TypeError, UnicodeDecodeError):
        return None, None

    message = error.get("message")
    if isinstance(message, dict):
        message = message.get("value")
    return error.get("code"), message

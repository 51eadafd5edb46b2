"""
Pytest configuration and fixtures for table envelope tests.
"""

from __future__ import annotations

import copy
import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urlsplit

import asyncpg
import httpx
import pytest
from dotenv import load_dotenv

from table_envelope import (
    CloudTable,
    CloudTableClient,
    InMemoryKeyResolver,
    PostgresKeyStore,
    RetryPolicy,
    SymmetricKey,
    TableEncryptionPolicy,
    TableServiceSettings,
)

PRIMARY = "https://account.table.example"
SECONDARY = "https://account-secondary.table.example"

_REQUEST_LINE = re.compile(r"^(GET|POST|PUT|MERGE|DELETE) (\S+) HTTP/1\.1\r?$", re.M)
_ENTITY_KEYS = re.compile(r"\(PartitionKey='(.*)',RowKey='(.*)'\)$")


# =============================================================================
# Fake table service
# =============================================================================


@dataclass
class RecordedSubRequest:
    """One sub-request decoded from a batch request body."""

    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[dict]


class FakeTableService:
    """
    In-memory table endpoint behind httpx.MockTransport.

    Serves single entity requests and `$batch`. Each batch is applied
    atomically: if one operation fails, nothing is stored and a single error
    response names the failed operation index.
    """

    def __init__(self) -> None:
        self.entities: Dict[Tuple[str, str], dict] = {}
        self.requests: List[httpx.Request] = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._failures: List[Tuple[int, str]] = []
        self._drop_last_response = False
        self._scripted: List[List[str]] = []

    # -- scripting ------------------------------------------------------------

    def fail_next(self, status: int, code: str = "ServerBusy") -> None:
        """Reject the next request as a whole."""
        self._failures.append((status, code))

    def drop_last_sub_response(self) -> None:
        """Omit the last sub-response of subsequent successful batches."""
        self._drop_last_response = True

    def respond_next(self, *parts: str) -> None:
        """Answer the next batch with these raw sub-response parts, unapplied."""
        self._scripted.append(list(parts))

    def put(self, partition_key: str, row_key: str, payload: dict) -> str:
        """Store a raw JSON entity directly; returns its ETag."""
        stored = dict(payload, PartitionKey=partition_key, RowKey=row_key)
        return self._stamp(stored)

    def sub_requests(self, index: int = -1) -> List[RecordedSubRequest]:
        return parse_batch_request(self.requests[index])

    def hosts(self) -> List[str]:
        return [request.url.host for request in self.requests]

    # -- transport --------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self._failures:
            status, code = self._failures.pop(0)
            return httpx.Response(
                status,
                json={"odata.error": {"code": code, "message": {"value": "Injected failure"}}},
            )

        if request.url.path != "/$batch":
            return self._single(request)
        if self._scripted:
            return _batch_response(self._scripted.pop(0))

        snapshot = copy.deepcopy(self.entities)
        parts: List[str] = []
        for index, sub in enumerate(parse_batch_request(request)):
            status, headers, body = self._apply(sub)
            if status >= 400 and not (sub.method == "GET" and status == 404):
                self.entities = snapshot
                error = {"odata.error": {"code": body, "message": {"value": f"{index}:{body}"}}}
                parts = [_http_response(status, {"Content-Type": "application/json"}, error)]
                break
            parts.append(_http_response(status, headers, body))

        if self._drop_last_response:
            parts = parts[:-1]

        return _batch_response(parts)

    def _single(self, request: httpx.Request) -> httpx.Response:
        body = request.content
        sub = RecordedSubRequest(
            method=request.method,
            url=str(request.url),
            headers={name.decode(): value.decode() for name, value in request.headers.raw},
            body=json.loads(body) if body else None,
        )
        status, headers, payload = self._apply(sub)
        if status >= 400:
            error = {"odata.error": {"code": payload, "message": {"value": payload}}}
            return httpx.Response(status, json=error)
        if payload is None:
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, headers=headers, json=payload)

    # -- operations -------------------------------------------------------------

    def _apply(self, sub: RecordedSubRequest) -> Tuple[int, Dict[str, str], object]:
        path = urlsplit(sub.url).path
        if sub.method == "POST":
            key = (sub.body["PartitionKey"], sub.body["RowKey"])
            if key in self.entities:
                return 409, {}, "EntityAlreadyExists"
            etag = self._stamp(dict(sub.body))
            if sub.headers.get("Prefer") == "return-content":
                return 201, {"ETag": etag}, self._payload(key)
            return 204, {"ETag": etag}, None

        match = _ENTITY_KEYS.search(unquote(path))
        assert match is not None, sub.url
        key = (match.group(1).replace("''", "'"), match.group(2).replace("''", "'"))
        existing = self.entities.get(key)
        if_match = sub.headers.get("If-Match")

        if sub.method == "GET":
            if existing is None:
                return 404, {}, "ResourceNotFound"
            payload = self._payload(key)
            select = parse_qs(urlsplit(sub.url).query).get("$select")
            if select:
                columns = set(select[0].split(",")) | {"PartitionKey", "RowKey", "Timestamp"}
                payload = {
                    name: value
                    for name, value in payload.items()
                    if name.split("@")[0] in columns or name.startswith("odata.")
                }
            return 200, {"ETag": existing["odata.etag"]}, payload

        if if_match is not None:
            if existing is None:
                return 404, {}, "ResourceNotFound"
            if if_match != "*" and if_match != existing["odata.etag"]:
                return 412, {}, "UpdateConditionNotSatisfied"

        if sub.method == "DELETE":
            del self.entities[key]
            return 204, {}, None
        if sub.method == "PUT":
            etag = self._stamp(dict(sub.body))
        else:
            merged = dict(existing or {})
            merged.update(sub.body)
            etag = self._stamp(merged)
        return 204, {"ETag": etag}, None

    def _stamp(self, entity: dict) -> str:
        self._clock += timedelta(seconds=1)
        timestamp = self._clock.strftime("%Y-%m-%dT%H:%M:%S.0000000Z")
        entity["Timestamp"] = timestamp
        entity["odata.etag"] = "W/\"datetime'{}'\"".format(quote(timestamp, safe=""))
        self.entities[(entity["PartitionKey"], entity["RowKey"])] = entity
        return entity["odata.etag"]

    def _payload(self, key: Tuple[str, str]) -> dict:
        return dict(self.entities[key])


def parse_batch_request(request: httpx.Request) -> List[RecordedSubRequest]:
    """Decode the sub-requests of a multipart batch request, in order."""
    text = request.content.decode("utf-8")
    subs = []
    for match in _REQUEST_LINE.finditer(text):
        end = text.find("\r\n--", match.end())
        segment = text[match.end():end].strip("\r\n")
        head, _, body = segment.partition("\r\n\r\n")
        headers = {}
        for line in head.split("\r\n"):
            name, sep, value = line.partition(":")
            if sep:
                headers[name.strip()] = value.strip()
        body = body.strip()
        subs.append(
            RecordedSubRequest(
                method=match.group(1),
                url=match.group(2),
                headers=headers,
                body=json.loads(body) if body else None,
            )
        )
    return subs


def _http_response(status: int, headers: Dict[str, str], body: object) -> str:
    lines = [
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        f"HTTP/1.1 {status} {httpx.codes.get_reason_phrase(status)}",
    ]
    lines.extend(f"{name}: {value}" for name, value in headers.items())
    if body is not None:
        lines.append("Content-Type: application/json;odata=minimalmetadata")
        lines.append("")
        lines.append(json.dumps(body))
    lines.append("")
    return "\r\n".join(lines)


def _batch_response(parts: List[str]) -> httpx.Response:
    lines = [
        "--batchresponse_1",
        "Content-Type: multipart/mixed; boundary=changesetresponse_1",
        "",
    ]
    for part in parts:
        lines.append("--changesetresponse_1")
        lines.append(part)
    lines.append("--changesetresponse_1--")
    lines.append("--batchresponse_1--")
    lines.append("")
    return httpx.Response(
        202,
        headers={"Content-Type": "multipart/mixed; boundary=batchresponse_1"},
        content="\r\n".join(lines).encode("utf-8"),
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def kek() -> SymmetricKey:
    """Key-encryption key for tests."""
    return SymmetricKey.generate("test:kek-1")


@pytest.fixture
def key_resolver(kek: SymmetricKey) -> InMemoryKeyResolver:
    return InMemoryKeyResolver([kek])


@pytest.fixture
def policy(kek: SymmetricKey) -> TableEncryptionPolicy:
    return TableEncryptionPolicy(key=kek)


@pytest.fixture
def settings() -> TableServiceSettings:
    return TableServiceSettings(
        account_name="account",
        endpoint=PRIMARY,
        secondary_endpoint=SECONDARY,
    )


@pytest.fixture
def table_service() -> FakeTableService:
    return FakeTableService()


@pytest.fixture
async def table_client(
    settings: TableServiceSettings,
    table_service: FakeTableService,
) -> AsyncGenerator[CloudTableClient, None]:
    """Client wired to the fake service; retries without delay."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(table_service.handler))
    client = CloudTableClient(
        settings,
        http_client=http_client,
        retry_policy=RetryPolicy(max_attempts=3, initial_backoff=0),
    )
    async with client:
        yield client
    await http_client.aclose()


@pytest.fixture
def table(table_client: CloudTableClient) -> CloudTable:
    return table_client.get_table_reference("customers")


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await pool.execute("DROP TABLE IF EXISTS table_encryption_keys")

    yield pool

    await pool.close()


@pytest.fixture
async def key_store(pg_pool: asyncpg.Pool) -> PostgresKeyStore:
    store = PostgresKeyStore(pg_pool)
    await store.ensure_schema()
    return store

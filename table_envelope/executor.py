"""
Execution of storage commands over HTTP with retries.

A StorageCommand describes one logical request: how to build its body for a
given endpoint, which status codes mean success, how to turn the response
into a result, and how to reset partial state before a retry. The Executor
sends it through an httpx.AsyncClient, retrying the whole command on
transient failures.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar
from uuid import uuid4

import httpx

from .auth import TokenCredential
from .errors import ServiceError, StorageError
from .wire import parse_error_body

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_VERSION = "2019-02-02"


class LocationMode(Enum):
    """Which endpoints a request may use."""

    PRIMARY_ONLY = "PrimaryOnly"
    PRIMARY_THEN_SECONDARY = "PrimaryThenSecondary"


class CommandLocationMode(Enum):
    """Which endpoints a particular command is safe to send to."""

    PRIMARY_ONLY = "PrimaryOnly"
    PRIMARY_OR_SECONDARY = "PrimaryOrSecondary"


@dataclass
class RetryPolicy:
    """Exponential backoff retry configuration."""

    max_attempts: int = 3
    initial_backoff: float = 1.0  # seconds
    max_backoff: float = 30.0  # seconds
    multiplier: float = 2.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.initial_backoff * (self.multiplier ** (attempt - 1)), self.max_backoff)


@dataclass
class StorageCommand(Generic[T]):
    """A request description executed (and possibly retried) as one unit."""

    method: str
    path: str
    build_content: Callable[[str], Awaitable[bytes]]
    post_process: Callable[[httpx.Response], Awaitable[T]]
    expected_statuses: Tuple[int, ...] = (200,)
    headers: Dict[str, str] = field(default_factory=dict)
    location_mode: CommandLocationMode = CommandLocationMode.PRIMARY_ONLY
    recovery_action: Optional[Callable[[], None]] = None
    timeout: Optional[float] = None


class Executor:
    """Sends storage commands to the primary (or secondary) endpoint."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        primary_endpoint: str,
        secondary_endpoint: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        credential: Optional[TokenCredential] = None,
    ) -> None:
        self._client = http_client
        self._primary = primary_endpoint.rstrip("/")
        self._secondary = secondary_endpoint.rstrip("/") if secondary_endpoint else None
        self._retry_policy = retry_policy or RetryPolicy()
        self._credential = credential

    @property
    def primary_endpoint(self) -> str:
        return self._primary

    @property
    def secondary_endpoint(self) -> Optional[str]:
        return self._secondary

    def endpoint_for_attempt(
        self,
        command: StorageCommand,
        location_mode: LocationMode,
        attempt: int,
    ) -> str:
        """Primary for writes; alternate primary/secondary for reads when allowed."""
        if (
            command.location_mode is CommandLocationMode.PRIMARY_ONLY
            or location_mode is LocationMode.PRIMARY_ONLY
            or self._secondary is None
        ):
            return self._primary
        return self._primary if attempt % 2 == 1 else self._secondary

    async def execute(
        self,
        command: StorageCommand[T],
        location_mode: LocationMode = LocationMode.PRIMARY_ONLY,
    ) -> T:
        """
        Execute a command, retrying the whole command on transient errors.

        Raises:
            StorageError: The last error once retries are exhausted, or the
                first non-retryable error
        """
        attempt = 0
        while True:
            attempt += 1
            endpoint = self.endpoint_for_attempt(command, location_mode, attempt)
            try:
                return await self._execute_once(command, endpoint)
            except StorageError as e:
                if not e.retryable or attempt >= self._retry_policy.max_attempts:
                    raise
                delay = self._retry_policy.backoff(attempt)
                logger.warning(
                    "%s %s failed on attempt %d/%d (%s); retrying in %.2fs",
                    command.method,
                    command.path,
                    attempt,
                    self._retry_policy.max_attempts,
                    e,
                    delay,
                )

            if command.recovery_action is not None:
                command.recovery_action()
            await asyncio.sleep(delay)

    async def _execute_once(self, command: StorageCommand[T], endpoint: str) -> T:
        content = await command.build_content(endpoint)
        headers = {
            "x-ms-version": SERVICE_VERSION,
            "x-ms-date": format_datetime(datetime.now(timezone.utc), usegmt=True),
            "x-ms-client-request-id": str(uuid4()),
            "DataServiceVersion": "3.0;NetFx",
            "MaxDataServiceVersion": "3.0;NetFx",
        }
        headers.update(command.headers)
        if self._credential is not None:
            headers["Authorization"] = self._credential.authorization_header()

        logger.debug("%s %s%s (%d bytes)", command.method, endpoint, command.path, len(content))
        request_kwargs = {}
        if command.timeout is not None:
            request_kwargs["timeout"] = command.timeout
        try:
            response = await self._client.request(
                command.method,
                endpoint + command.path,
                content=content,
                headers=headers,
                **request_kwargs,
            )
        except httpx.TransportError as e:
            raise ServiceError(f"Request to {endpoint} failed: {e}") from e

        if response.status_code not in command.expected_statuses:
            error_code, message = parse_error_body(response.content)
            raise ServiceError(
                message or f"Unexpected status {response.status_code} {response.reason_phrase}",
                http_status_code=response.status_code,
                error_code=error_code,
            )

        return await command.post_process(response)

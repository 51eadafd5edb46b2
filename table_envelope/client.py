"""
Table service client.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .auth import TokenCredential
from .config import TableRequestOptions, TableServiceSettings
from .encryption import EncryptionResolver, TableEncryptionPolicy
from .executor import Executor, RetryPolicy
from .table import CloudTable

logger = logging.getLogger(__name__)


class CloudTableClient:
    """
    Client for one storage account's table endpoint.

    Owns the HTTP client unless one is passed in. Use as an async context
    manager, or call `close()` when done.
    """

    def __init__(
        self,
        settings: TableServiceSettings,
        credential: Optional[TokenCredential] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        encryption_policy: Optional[TableEncryptionPolicy] = None,
        encryption_resolver: Optional[EncryptionResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._settings = settings
        self._credential = credential
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout
        )
        self._executor = Executor(
            self._http_client,
            settings.endpoint,
            settings.secondary_endpoint,
            retry_policy=retry_policy or RetryPolicy(max_attempts=settings.max_attempts),
            credential=credential,
        )

        defaults = TableRequestOptions.from_settings(settings)
        defaults.encryption_policy = encryption_policy
        defaults.encryption_resolver = encryption_resolver
        self._default_options = defaults

    @property
    def settings(self) -> TableServiceSettings:
        return self._settings

    @property
    def default_options(self) -> TableRequestOptions:
        return self._default_options

    @property
    def executor(self) -> Executor:
        return self._executor

    def get_table_reference(self, name: str) -> CloudTable:
        return CloudTable(name, self._executor, self._default_options)

    async def close(self) -> None:
        if self._credential is not None:
            await self._credential.close()
        if self._owns_http_client:
            await self._http_client.aclose()
        logger.debug("Closed table client for %s", self._settings.account_name)

    async def __aenter__(self) -> CloudTableClient:
        if self._credential is not None:
            self._credential.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

"""
Bearer token credential with background renewal.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TokenRenewer = Callable[[str], Awaitable[str]]


class TokenCredential:
    """
    OAuth bearer token, optionally renewed on a fixed interval.

    Renewal runs as a background task started by `start()` (or by entering
    the credential as an async context manager) and stopped by `close()`.
    """

    def __init__(
        self,
        token: str,
        renew: Optional[TokenRenewer] = None,
        renew_interval: float = 300.0,
    ) -> None:
        self._token = token
        self._renew = renew
        self._renew_interval = renew_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def token(self) -> str:
        return self._token

    @property
    def is_renewing(self) -> bool:
        return self._task is not None and not self._task.done()

    def authorization_header(self) -> str:
        return f"Bearer {self._token}"

    def start(self) -> None:
        """Start the renewal task; no-op without a renewer or when running."""
        if self._renew is None or self.is_renewing:
            return
        self._task = asyncio.create_task(self._renew_loop(self._renew), name="token-renewal")

    async def close(self) -> None:
        """
        Stop the renewal task.

        The cancellation issued here is absorbed; a cancellation of the task
        calling close() still propagates.
        """
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    async def _renew_loop(self, renew: TokenRenewer) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                self._token = await renew(self._token)
                logger.debug("Bearer token renewed")
            except Exception:
                # Keep the current token; the next interval tries again.
                logger.exception("Bearer token renewal failed")

    async def __aenter__(self) -> TokenCredential:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

"""HTTP client for the transaction indexing subsystem.

The engine consumes already-indexed transactions; this client is the
``fetch_transactions(wallet_id, since)`` collaborator used by ingestion.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from wallet_analytics.common.config import settings

logger = structlog.get_logger()


class IndexerError(Exception):
    """Raised when the indexer returns an error payload."""
    pass


class TransactionSource(ABC):
    """Source of raw transactions for a wallet."""

    @abstractmethod
    async def fetch_transactions(self, wallet_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Raw transaction payloads for the wallet, oldest first."""


class IndexerClient(TransactionSource):
    """Async client for the indexer REST API with bounded concurrency."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        rate_limit_semaphore: Optional[asyncio.Semaphore] = None,
        timeout: int = 30,
        page_size: int = 500,
        max_retries: Optional[int] = None,
    ):
        """Initialize indexer client.

        Args:
            base_url: Indexer API root, e.g. ``https://indexer.example/api/v1``
            api_key: API key (defaults to INDEXER_API_KEY env var)
            rate_limit_semaphore: Optional semaphore for rate limiting
            timeout: Request timeout in seconds
            page_size: Transactions requested per page
            max_retries: Attempts per request (defaults to MAX_RETRIES)

        Raises:
            ValueError: If no base URL is configured
        """
        if not base_url:
            raise ValueError("INDEXER_BASE_URL must be set")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("INDEXER_API_KEY", "")
        self.rate_limit = rate_limit_semaphore or asyncio.Semaphore(10)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.page_size = page_size
        self.requests_made = 0
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_wait = wait_exponential(multiplier=1, min=2, max=60)

        self.logger = logger.bind(component="indexer_client")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET a JSON document from the indexer, retrying transport failures.

        Raises:
            IndexerError: If the response carries an error field (not retried)
            aiohttp.ClientError: When every attempt failed
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request(path, params)

    async def _request(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with self.rate_limit:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.get(f"{self.base_url}{path}", params=params) as response:
                    response.raise_for_status()
                    data = await response.json()
                    self.requests_made += 1

                    if isinstance(data, dict) and data.get("error"):
                        self.logger.error("indexer_error", path=path, error=data["error"])
                        raise IndexerError(f"Indexer error: {data['error']}")

                    return data

    async def fetch_transactions(self, wallet_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Fetch every transaction of a wallet after ``since``, following pagination.

        Args:
            wallet_id: Wallet identifier known to the indexer
            since: Only return transactions at or after this time

        Returns:
            List of raw transaction payloads
        """
        log = self.logger.bind(operation="fetch_transactions")
        transactions: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"limit": self.page_size}
            if since is not None:
                params["since"] = since.isoformat()
            if cursor:
                params["cursor"] = cursor

            page = await self._get(f"/wallets/{wallet_id}/transactions", params)
            transactions.extend(page.get("transactions", []))

            cursor = page.get("next_cursor")
            if not cursor:
                break

        log.info("transactions_fetched", count=len(transactions))
        return transactions

"""
Cached JSON Web Key Set provider.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
from jose import jwk

from gox.errors import KeySetError
from gox.logging import get_logger


@dataclass(frozen=True)
class KeySet:
    """Keys of a fetched JWKS document."""

    keys: Tuple[Dict[str, Any], ...]

    def __len__(self) -> int:
        return len(self.keys)

    def lookup(self, kid: str) -> Optional[Dict[str, Any]]:
        """Return the raw JWK with the given key ID."""
        for key in self.keys:
            if key.get("kid") == kid:
                return key
        return None

    def key(self, kid: str) -> Any:
        """Return the python-jose key for `kid`, raising KeySetError when absent."""
        key_data = self.lookup(kid)
        if key_data is None:
            raise KeySetError("Signing key not found", {"kid": kid})
        return jwk.construct(key_data, algorithm=key_data.get("alg", "RS256"))


class PublicKeyProvider:
    """Serve public keys from a JWKS URL, refetching them at most every `refresh_interval` seconds."""

    def __init__(
        self,
        url: str,
        refresh_interval: float,
        *,
        http_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.refresh_interval = refresh_interval
        self.logger = get_logger("gox.jwk")

        self._key_set: Optional[KeySet] = None
        self._last_refresh: float = 0.0
        self._lock = asyncio.Lock()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=http_timeout)

    @classmethod
    async def create(cls, url: str, refresh_interval: float, **kwargs: Any) -> "PublicKeyProvider":
        """Build a provider and fetch the key set once; the fetch error propagates."""
        provider = cls(url, refresh_interval, **kwargs)
        try:
            await provider.refresh()
        except Exception:
            await provider.close()
            raise
        return provider

    def _is_fresh(self) -> bool:
        return self._key_set is not None and (time.monotonic() - self._last_refresh) < self.refresh_interval

    async def get_key_set(self) -> KeySet:
        """Return the cached key set, refreshing it when stale.

        A failed refresh keeps serving the previous key set.
        """
        if self._is_fresh():
            return self._key_set

        async with self._lock:
            # another caller may have refreshed while we waited
            if self._is_fresh():
                return self._key_set
            try:
                return await self._fetch()
            except (httpx.HTTPError, KeySetError) as e:
                if self._key_set is None:
                    raise
                self.logger.warning("Using stale JWKS due to fetch failure", url=self.url, error=str(e))
                return self._key_set

    async def refresh(self) -> KeySet:
        """Fetch the key set now."""
        async with self._lock:
            return await self._fetch()

    async def _fetch(self) -> KeySet:
        response = await self._client.get(self.url)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise KeySetError("JWKS response is not JSON", {"url": self.url}) from e

        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise KeySetError("JWKS response missing 'keys' array", {"url": self.url})

        self._key_set = KeySet(keys=tuple(k for k in keys if isinstance(k, dict)))
        self._last_refresh = time.monotonic()
        self.logger.info("JWKS refreshed", url=self.url, keys_count=len(self._key_set))
        return self._key_set

    async def close(self) -> None:
        """Close the HTTP client if the provider created it."""
        if self._owns_client:
            await self._client.aclose()

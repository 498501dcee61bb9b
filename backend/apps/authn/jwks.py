"""
Signing keys for RS256 bearer tokens.

The key set at AUTH_JWKS_URL is downloaded, indexed by ``kid`` and reused
for AUTH_JWKS_CACHE_TTL seconds. A token signed with a kid we have not seen
forces an early reload, at most once every MIN_REFRESH_INTERVAL seconds,
so rotated keys are accepted without waiting for the TTL.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 10
MIN_REFRESH_INTERVAL = 5

Jwk = Dict[str, Any]


def fetch_key_set(url: str) -> Dict[str, Jwk]:
    """Download a JWKS document and index its keys by kid."""
    response = requests.get(url, timeout=FETCH_TIMEOUT)
    response.raise_for_status()
    keys = {key['kid']: key for key in response.json().get('keys', []) if key.get('kid')}
    logger.info(f"Loaded {len(keys)} signing keys from {url}")
    return keys


class JWKSCache:
    """
    Thread-safe kid -> JWK lookup.

    ``fetch`` and ``clock`` are injectable so expiry and rotation can be
    driven without a network or real time.
    """

    def __init__(
        self,
        jwks_url: str,
        cache_ttl: int = 600,
        fetch: Callable[[str], Dict[str, Jwk]] = fetch_key_set,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self._fetch = fetch
        self._clock = clock
        self._keys: Dict[str, Jwk] = {}
        self._loaded_at: Optional[float] = None
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls) -> 'JWKSCache':
        return cls(
            getattr(settings, 'AUTH_JWKS_URL', ''),
            int(getattr(settings, 'AUTH_JWKS_CACHE_TTL', 600)),
        )

    def _stale(self, now: float) -> bool:
        return self._loaded_at is None or now - self._loaded_at >= self.cache_ttl

    def refresh(self) -> None:
        """Reload the key set. Network and HTTP errors propagate."""
        with self._lock:
            try:
                self._keys = self._fetch(self.jwks_url)
            except requests.RequestException as e:
                logger.error(f"Could not load signing keys from {self.jwks_url}: {e}")
                raise
            self._loaded_at = self._clock()

    def get_key(self, kid: str) -> Optional[Jwk]:
        """
        Return the JWK for ``kid``, or None when the key set does not hold it.

        Raises:
            requests.RequestException: If a needed reload fails
        """
        if not self.jwks_url:
            logger.warning("AUTH_JWKS_URL is not configured; RS256 tokens cannot be verified")
            return None

        with self._lock:
            now = self._clock()
            if self._stale(now):
                self.refresh()
            elif kid not in self._keys and now - self._loaded_at > MIN_REFRESH_INTERVAL:
                logger.info(f"Unknown kid {kid}, reloading signing keys")
                self.refresh()
            key = self._keys.get(kid)

        if key is None:
            logger.warning(f"No signing key with kid {kid}")
        return key

    def clear(self) -> None:
        with self._lock:
            self._keys = {}
            self._loaded_at = None


_jwks_cache: Optional[JWKSCache] = None


def get_jwks_cache() -> JWKSCache:
    global _jwks_cache
    if _jwks_cache is None:
        _jwks_cache = JWKSCache.from_settings()
    return _jwks_cache


def reset_jwks_cache():
    global _jwks_cache
    _jwks_cache = None

"""Thread-safe in-memory caching of Microsoft Graph access tokens.

Tokens are never written to environment variables, files or the cache store.
"""

import threading
from datetime import datetime
from datetime import timezone
from typing import Optional
from typing import Tuple

from loguru import logger

from usercache.graph_auth.token_gen import get_graph_token

# Refresh tokens that expire within this many seconds
REFRESH_MARGIN_SECONDS = 300


class GraphTokenManager:
    """
    Thread-safe token manager that caches Graph OAuth tokens in memory.

    The token is NOT generated at initialization; the first get_token() call
    requests it (lazy initialization).

    Attributes
    ----------
    _token : Optional[str]
        The currently cached access token
    _expires_at : Optional[datetime]
        Expiration time of the cached token
    _lock : threading.Lock
        Guards the cache; get_token() runs in worker threads via asyncio.to_thread
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = threading.Lock()

        logger.info("GraphTokenManager initialized (in-memory caching)", tenant_id=tenant_id)

    def get_token(self) -> Tuple[str, datetime]:
        """
        Get a valid access token.

        Returns the cached token if it expires in more than five minutes,
        otherwise requests a new one.

        Returns
        -------
        Tuple[str, datetime]
            access token and its expiry time (UTC)
        """
        with self._lock:
            now_utc = datetime.now(timezone.utc)

            if self._token and self._expires_at:
                time_until_expiry = (self._expires_at - now_utc).total_seconds()
                if time_until_expiry > REFRESH_MARGIN_SECONDS:
                    logger.debug("Reusing cached Graph token", expires_in_seconds=int(time_until_expiry))
                    return self._token, self._expires_at

                logger.info(
                    "Cached Graph token expires soon, requesting new token",
                    expires_in_seconds=int(time_until_expiry),
                )

            logger.info("Requesting new Graph access token")
            token, expires_at = get_graph_token(
                self.tenant_id,
                self.client_id,
                self.client_secret,
                now_utc,
                timeout=self.timeout,
            )

            self._token = token
            self._expires_at = expires_at

            logger.info("New Graph token cached", expires_at=expires_at.isoformat())
            return token, expires_at

    def invalidate_token(self) -> None:
        """Drop the cached token so the next get_token() requests a new one (e.g. after a 401)."""
        with self._lock:
            logger.info("Graph token invalidated")
            self._token = None
            self._expires_at = None

"""
M-Pesa OAuth token management.

    GET /oauth/v1/generate?grant_type=client_credentials   (HTTP Basic auth)

Daraja tokens live for ``expires_in`` seconds (normally 3599). One
TokenManager is owned by each gateway client; the token is reused until it is
within SAFETY_MARGIN seconds of expiry or a downstream call reports 401.
"""

import logging
import threading
import time
from typing import Callable, Optional

import requests

from foodhub.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenManager:
    """Fetches and caches the Daraja bearer token for one set of credentials."""

    _EP_AUTH = "/oauth/v1/generate"

    SAFETY_MARGIN = 60
    DEFAULT_EXPIRES_IN = 3600

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: int = 15,
        alert_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not consumer_key or not consumer_secret:
            raise ValueError("TokenManager: 'consumer_key' and 'consumer_secret' are required")

        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.timeout = timeout
        self.alert_threshold = alert_threshold
        self._clock = clock

        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = threading.Lock()
        self.consecutive_failures = 0

    def get_access_token(self) -> str:
        """Return a cached token, fetching a new one when it is missing or close to expiry."""
        with self._lock:
            if self._access_token and self._clock() < self._expires_at - self.SAFETY_MARGIN:
                return self._access_token
            return self._refresh()

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after a downstream 401."""
        with self._lock:
            self._access_token = None
            self._expires_at = 0.0

    @property
    def has_valid_token(self) -> bool:
        return bool(self._access_token) and self._clock() < self._expires_at - self.SAFETY_MARGIN

    def _refresh(self) -> str:
        url = f"{self.base_url}{self._EP_AUTH}"
        try:
            resp = requests.get(
                url,
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self._record_failure()
            raise AuthenticationError(f"M-Pesa token request failed: {exc}") from exc

        if resp.status_code != 200:
            self._record_failure()
            raise AuthenticationError(
                f"M-Pesa token request returned HTTP {resp.status_code}",
                raw_body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            self._record_failure()
            raise AuthenticationError("M-Pesa token response is not JSON", raw_body=resp.text) from exc

        token = data.get("access_token")
        if not token:
            self._record_failure()
            raise AuthenticationError("M-Pesa token response has no access_token", raw_body=resp.text)

        # Daraja sends expires_in as a string
        try:
            expires_in = int(data.get("expires_in", self.DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = self.DEFAULT_EXPIRES_IN

        self._access_token = token
        self._expires_at = self._clock() + expires_in
        self.consecutive_failures = 0

        logger.debug("M-Pesa access token refreshed (expires in %ds)", expires_in)
        return token

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.alert_threshold:
            logger.critical(
                "M-Pesa token acquisition has failed %d times in a row",
                self.consecutive_failures,
            )
        else:
            logger.warning("M-Pesa token acquisition failed (%d consecutive)", self.consecutive_failures)

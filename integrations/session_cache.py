import logging
import re
import time
from dataclasses import dataclass

import requests

from config import config
from errors import AuthenticationFailed

logger = logging.getLogger("LinnworksSession")

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def normalize_base_url(server: str) -> str:
    s = (server or "").strip()
    with_scheme = s if _SCHEME.match(s) else f"https://{s}"
    return with_scheme.rstrip("/")


@dataclass(frozen=True)
class LinnworksSession:
    token: str
    base_url: str
    fetched_at: float


class SessionCache:
    """
    Time-bounded memo of the platform credential exchange.

    The cached session is a single reference to an immutable snapshot, so
    readers never see a half-written session. Refresh is not serialized:
    concurrent callers that find the cache stale may each authenticate and
    whichever result is stored last wins. Any valid session is as good as
    another.
    """

    def __init__(
            self,
            app_id: str,
            app_secret: str,
            install_token: str,
            auth_url: str = config.LINNWORKS_AUTH_URL,
            ttl_seconds: float = config.LINNWORKS_SESSION_TTL_MINUTES * 60,
            timeout: float = config.LINNWORKS_TIMEOUT_SECONDS,
            http=None,
            clock=time.monotonic,
    ):
        self._credentials = {
            "ApplicationId": app_id,
            "ApplicationSecret": app_secret,
            "Token": install_token,
        }
        self.auth_url = auth_url
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.http = http or requests.Session()
        self.clock = clock
        self._session: LinnworksSession | None = None

    @classmethod
    def from_config(cls, **kwargs):
        return cls(
            config.LINNWORKS_APP_ID,
            config.LINNWORKS_APP_SECRET,
            config.LINNWORKS_INSTALL_TOKEN,
            **kwargs,
        )

    def acquire(self, force: bool = False) -> LinnworksSession:
        current = self._session
        now = self.clock()
        if not force and current is not None and now - current.fetched_at < self.ttl_seconds:
            return current

        fresh = self._authenticate(now)
        self._session = fresh
        return fresh

    def invalidate(self):
        self._session = None

    def _authenticate(self, now: float) -> LinnworksSession:
        logger.info("Authenticating against the inventory platform")
        try:
            resp = self.http.request(
                "POST",
                self.auth_url,
                json=self._credentials,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Credential exchange failed: {e}")
            raise AuthenticationFailed(None, str(e))

        text = resp.text
        try:
            payload = resp.json()
        except ValueError:
            payload = None

        token = payload.get("Token") if isinstance(payload, dict) else None
        server = payload.get("Server") if isinstance(payload, dict) else None
        if not resp.ok or not token or not server:
            logger.error(f"Credential exchange rejected ({resp.status_code})")
            raise AuthenticationFailed(resp.status_code, text)

        return LinnworksSession(token=token, base_url=normalize_base_url(server), fetched_at=now)

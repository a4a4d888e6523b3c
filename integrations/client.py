import logging

import requests

from config import config

logger = logging.getLogger("LinnworksClient")

STALE_SESSION_STATUSES = (401, 403)


def read_json(resp):
    """Decoded JSON body, or the raw text when the body is not JSON."""
    try:
        return resp.json()
    except ValueError:
        return resp.text


class LinnworksClient:
    """Authorized access to the inventory/ordering platform."""

    def __init__(self, sessions, http=None, timeout: float = config.LINNWORKS_TIMEOUT_SECONDS):
        self.sessions = sessions
        self.http = http or requests.Session()
        self.timeout = timeout

    def request(self, method: str, path: str, json=None, params=None):
        """
        Send one call with the cached bearer token.

        A 401/403 means the token went stale: the session is refreshed and the
        call is repeated exactly once. Transport errors (requests exceptions)
        propagate to the caller, which alone knows whether they are safe to
        retry.
        """
        session = self.sessions.acquire()
        resp = self._send(session, method, path, json, params)
        if resp.status_code in STALE_SESSION_STATUSES:
            logger.warning(f"{method} {path} returned {resp.status_code}; refreshing session")
            session = self.sessions.acquire(force=True)
            resp = self._send(session, method, path, json, params)
        return resp

    def post(self, path: str, payload):
        return self.request("POST", path, json=payload)

    def get(self, path: str, params=None):
        return self.request("GET", path, params=params)

    def _send(self, session, method, path, json, params):
        headers = {"Authorization": session.token, "Accept": "application/json"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        return self.http.request(
            method,
            f"{session.base_url}{path}",
            json=json,
            params=params,
            headers=headers,
            timeout=self.timeout,
        )

import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

import requests

from fusionsolar_auth import REQUEST_TIMEOUT, FusionSolarAuth, login_subdomain_for
from fusionsolar_exceptions import AuthenticationError, TransportError
from fusionsolar_session import SessionSnapshot

logger = logging.getLogger(__name__)

LOGIN_PAGE_MARKER = "/unisso/login.action"
CSRF_HEADER = "roarand"


class ResponseClass(Enum):
    """How a response should be treated by the transport."""

    OK = "ok"
    AUTH_REQUIRED = "auth_required"
    FATAL = "fatal"


def classify_response(response: requests.Response) -> ResponseClass:
    """Classify a response.

    401/403 and a silent redirect to the portal login page mean the session
    is gone. Any other error status is fatal.
    """
    if response.status_code in (401, 403):
        return ResponseClass.AUTH_REQUIRED
    if LOGIN_PAGE_MARKER in (response.url or ""):
        return ResponseClass.AUTH_REQUIRED
    if response.status_code >= 400:
        return ResponseClass.FATAL
    return ResponseClass.OK


def decode_json(response: requests.Response) -> dict:
    """Default response decoder: JSON object body of a successful response.

    Raises:
        TransportError: On error status or a body that is not a JSON object
    """
    if classify_response(response) is not ResponseClass.OK:
        raise TransportError(f"Request to {response.url} failed with HTTP {response.status_code}")
    try:
        data = response.json()
    except ValueError as e:
        raise TransportError(f"Invalid JSON response from {response.url}") from e
    if not isinstance(data, dict):
        raise TransportError(f"Unexpected JSON response from {response.url}")
    return data


class FusionSolarHttpClient:
    """HTTP client for the FusionSolar portal with transparent re-authentication."""

    USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36"
    )

    def __init__(self, subdomain: str, username: str, password: str,
                 session: Optional[requests.Session] = None):
        """Initialize the client.

        Args:
            subdomain: Portal subdomain, e.g. region01eu5 or uni001eu5
            username: FusionSolar username
            password: FusionSolar password
            session: Optional preconfigured requests session
        """
        self.base_url = f"https://{subdomain}.fusionsolar.huawei.com"
        self.session = session or requests.Session()

        # Set common headers
        self.session.headers.update({
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "en-US,en;q=0.9",
        })

        self.auth = FusionSolarAuth(
            self.session,
            self.base_url,
            login_subdomain_for(subdomain),
            username,
            password,
        )

    def get(self, path: str, params: Optional[dict] = None,
            decode: Callable[[requests.Response], Any] = decode_json) -> Any:
        """Perform a GET request, re-authenticating once if the session is gone.

        Args:
            path: Path relative to the portal base URL, or an absolute URL
            params: Query parameters
            decode: Called with the final response; its result is returned

        Raises:
            AuthenticationError: If the request is still unauthenticated after
                re-authentication, or the login itself fails
            TransportError: If the request fails
        """
        label = f"GET {path}"
        logger.debug(f"{label} request")

        generation, response = self._send(path, params)
        if classify_response(response) is ResponseClass.AUTH_REQUIRED:
            logger.info(f"{label} failed with HTTP {response.status_code}, re-authenticating")
            self.auth.configure_session(since_generation=generation)

            _, response = self._send(path, params)
            if classify_response(response) is ResponseClass.AUTH_REQUIRED:
                raise AuthenticationError(
                    f"{label} still unauthenticated after re-authentication "
                    f"(HTTP {response.status_code})"
                )

        return decode(response)

    def export_session(self) -> SessionSnapshot:
        return self.auth.export_snapshot()

    def restore_session(self, snapshot: SessionSnapshot) -> None:
        self.auth.restore(snapshot)
        logger.info("Session snapshot restored")

    def close(self) -> None:
        logger.debug("Closing FusionSolar HTTP client")
        self.session.close()

    def _build_url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}{'' if path.startswith('/') else '/'}{path}"

    def _send(self, path: str, params: Optional[dict]):
        csrf_token, generation = self.auth.request_context()
        headers = {CSRF_HEADER: csrf_token} if csrf_token else {}
        query = dict(params or {})
        query["_"] = int(time.time() * 1000)

        url = self._build_url(path)
        try:
            response = self.session.request(
                "GET", url, params=query, headers=headers, timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            raise TransportError(f"GET {path} failed: {e}") from e
        return generation, response

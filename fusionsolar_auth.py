import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

import requests

from fusionsolar_crypto import PasswordEncryptor, PublicKeyDescriptor, secure_nonce
from fusionsolar_exceptions import AuthenticationError, DataIntegrityError, TransportError
from fusionsolar_session import SessionSnapshot, SessionState

logger = logging.getLogger(__name__)

PUBKEY_URL = "https://eu5.fusionsolar.huawei.com/unisso/pubkey"
REQUEST_TIMEOUT = 30

# Error code asking the client to visit another region before continuing
REDIRECT_ERROR_CODE = "470"
BAD_SUBDOMAIN_EXCEPTION_IDS = ("Query company failed.", "bad status")


class AuthState(Enum):
    """Login state of a FusionSolarAuth instance."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


def login_subdomain_for(subdomain: str) -> str:
    """Return the host prefix of the login server for a portal subdomain.

    ``region01eu5`` and ``uni001eu5`` both log in on ``eu5``.
    """
    if subdomain.startswith("region"):
        return subdomain[8:]
    if subdomain.startswith("uni"):
        return subdomain[6:]
    return subdomain


def _now_millis() -> int:
    return int(time.time() * 1000)


class FusionSolarAuth:
    """Handles authentication for the FusionSolar portal."""

    def __init__(self, session: requests.Session, base_url: str, login_subdomain: str,
                 username: str, password: str, encryptor: Optional[PasswordEncryptor] = None):
        """Initialize the auth handler.

        Args:
            session: HTTP session shared with the data client (cookies live here)
            base_url: Portal base URL, e.g. https://region01eu5.fusionsolar.huawei.com
            login_subdomain: Host prefix of the login server, e.g. eu5
            username: FusionSolar username
            password: FusionSolar password
            encryptor: Password encoder (defaults to PasswordEncryptor)
        """
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.login_base_url = f"https://{login_subdomain}.fusionsolar.huawei.com"
        self.username = username
        self.password = password
        self.encryptor = encryptor or PasswordEncryptor()

        self._lock = threading.Lock()
        self._state = SessionState(cookies=session.cookies)
        self._auth_state = AuthState.UNAUTHENTICATED
        self._generation = 0
        self._last_error: Optional[Exception] = None

    # -- Accessors, all under the session lock ------------------------------

    @property
    def state(self) -> AuthState:
        with self._lock:
            return self._auth_state

    @property
    def company_id(self) -> Optional[str]:
        with self._lock:
            return self._state.company_id

    @property
    def csrf_token(self) -> Optional[str]:
        with self._lock:
            return self._state.csrf_token

    def request_context(self) -> Tuple[Optional[str], int]:
        """Return the current CSRF token and session generation.

        The generation changes on every login attempt and is passed back to
        configure_session() so concurrent callers share a single re-login.
        """
        with self._lock:
            return self._state.csrf_token, self._generation

    def export_snapshot(self) -> SessionSnapshot:
        """Export the current session for persistence."""
        with self._lock:
            logger.debug("Exporting session snapshot")
            return self._state.to_snapshot()

    def restore(self, snapshot: SessionSnapshot) -> None:
        """Restore cookies, company id and CSRF token from a snapshot."""
        with self._lock:
            logger.info(f"Restoring session from snapshot (timestamp: {snapshot.timestamp.isoformat()})")
            self._state.restore(snapshot)
            if self._state.is_logged_in:
                self._auth_state = AuthState.AUTHENTICATED
            else:
                self._state.company_id = None
                self._state.csrf_token = None
                self._auth_state = AuthState.UNAUTHENTICATED
            self._generation += 1
            self._last_error = None

    # -- Session lifecycle ---------------------------------------------------

    def configure_session(self, since_generation: Optional[int] = None) -> None:
        """Log in and fetch the tokens needed for API calls.

        Only one configuration runs at a time. A caller passing the generation
        it observed before its request failed shares the outcome of any login
        attempted in the meantime: it returns if that login succeeded and
        raises if it failed, without contacting the portal again.

        Args:
            since_generation: Generation returned by request_context()

        Raises:
            AuthenticationError: If the portal rejects the login, or a
                concurrent login attempt failed
            TransportError: If a request fails
        """
        with self._lock:
            if since_generation is not None and since_generation != self._generation:
                if self._auth_state is AuthState.AUTHENTICATED:
                    logger.debug("Session already re-established by a concurrent request")
                    return
                if self._last_error is not None:
                    raise AuthenticationError(
                        f"Concurrent re-authentication failed: {self._last_error}"
                    ) from self._last_error

            logger.info("Configuring FusionSolar session...")
            self._auth_state = AuthState.AUTHENTICATING
            try:
                self.login()
                csrf_token = self._fetch_keep_alive_token()
                company_id = self._fetch_company_id()
                csrf_token = self._fetch_session_csrf_token() or csrf_token
            except Exception as e:
                self._state.company_id = None
                self._state.csrf_token = None
                self._auth_state = AuthState.UNAUTHENTICATED
                self._generation += 1
                self._last_error = e
                logger.error(f"✗ Failed to configure session: {e}")
                raise

            self._state.company_id = company_id
            self._state.csrf_token = csrf_token
            self._state.last_refreshed_at = datetime.now(timezone.utc)
            self._auth_state = AuthState.AUTHENTICATED
            self._generation += 1
            self._last_error = None
            logger.info("✓ Session configured successfully")

    def login(self) -> None:
        """Perform the login handshake.

        Session cookies end up in the shared cookie jar.

        Raises:
            AuthenticationError: If the portal reports a login error
            ConfigurationError: If the public key cannot be used
            TransportError: If a request fails
        """
        logger.debug("Authenticating with FusionSolar API...")

        response = self._send("GET", PUBKEY_URL)
        if response.status_code != 200:
            raise TransportError(f"Failed to retrieve public key. Status: {response.status_code}")
        descriptor = PublicKeyDescriptor.from_json(self._decode_json(response, "public key"))

        encoded_password = self.encryptor.encode(descriptor, self.password)
        if descriptor.encryption_enabled:
            login_url = f"{self.login_base_url}/unisso/v3/validateUser.action"
            params = {
                "timeStamp": str(descriptor.time_stamp),
                "nonce": secure_nonce(),
            }
        else:
            login_url = f"{self.login_base_url}/unisso/v2/validateUser.action"
            params = {
                "decision": "1",
                "service": f"{self.base_url}/unisess/v1/auth?service=/netecowebext/home/index.html#/LOGIN",
            }

        response = self._send(
            "POST",
            login_url,
            params=params,
            json={
                "organizationName": "",
                "username": self.username,
                "password": encoded_password,
            },
        )
        login_data = self._decode_json(response, "login")

        if str(login_data.get("errorCode")) == REDIRECT_ERROR_CODE:
            self._follow_login_redirect(login_data)

        error_msg = login_data.get("errorMsg")
        if error_msg and str(error_msg).strip():
            logger.error(f"Authentication failed: {error_msg}")
            raise AuthenticationError(f"Failed to login: {error_msg}")

        logger.debug("Authentication successful")

    def keep_alive(self) -> str:
        """Refresh the session and store the new CSRF token.

        Returns:
            str: The new token

        Raises:
            AuthenticationError: If there is no logged in session
        """
        with self._lock:
            if self._auth_state is not AuthState.AUTHENTICATED:
                raise AuthenticationError("Cannot keep alive a session that is not logged in")
            token = self._fetch_keep_alive_token()
            self._state.csrf_token = token
            self._state.last_refreshed_at = datetime.now(timezone.utc)
            logger.debug("Keep-alive successful, CSRF token updated")
            return token

    # -- Internal ------------------------------------------------------------

    def _follow_login_redirect(self, login_data: dict) -> None:
        """Visit the region page named by a 470 login response, once."""
        regions = login_data.get("respMultiRegionName") or []
        target = regions[1] if len(regions) > 1 else None
        if not target:
            raise AuthenticationError("Missing target subdomain in login response")

        logger.debug("Login requires an additional redirect")
        self._send("GET", f"{self.login_base_url}{target}")

    def _fetch_keep_alive_token(self) -> str:
        logger.debug("Sending keep-alive request")
        response = self._send("GET", f"{self.base_url}/rest/dpcloud/auth/v1/keep-alive")
        data = self._decode_json(response, "keep-alive")

        if data.get("code") != 0:
            logger.warning(f"Keep-alive failed with code {data.get('code')}")
            raise AuthenticationError(f"Failed to keep session alive: code {data.get('code')}")

        payload = data.get("payload")
        if not payload:
            raise DataIntegrityError("Login failed. No payload received from keep-alive.")
        return payload

    def _fetch_company_id(self) -> str:
        response = self._send(
            "GET",
            f"{self.base_url}/rest/neteco/web/organization/v2/company/current",
            params={"_": _now_millis()},
        )

        if response.status_code == 500:
            logger.error("Received 500 error when retrieving company data")
            try:
                exception_id = response.json().get("exceptionId")
            except (ValueError, AttributeError):
                exception_id = None
            if exception_id in BAD_SUBDOMAIN_EXCEPTION_IDS:
                raise AuthenticationError(
                    "Invalid response received. Please check the correct Huawei subdomain."
                )

        try:
            company_data = response.json()
            company_id = (company_data.get("data") or {}).get("moDn")
        except (ValueError, AttributeError):
            company_id = None

        if not company_id:
            raise AuthenticationError("Failed to retrieve company data")

        logger.debug(f"Company ID: {company_id}")
        return company_id

    def _fetch_session_csrf_token(self) -> Optional[str]:
        # The keep-alive payload stays in use if this endpoint is unavailable
        try:
            response = self.session.request(
                "GET", f"{self.base_url}/unisess/v1/auth/session", timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
            token = response.json()["csrfToken"]
        except (requests.RequestException, ValueError, KeyError, TypeError):
            logger.debug("Could not retrieve CSRF token from session endpoint (will use keep-alive payload)")
            return None

        logger.debug("CSRF token retrieved")
        return token

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _decode_json(response: requests.Response, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(
                f"Invalid {operation} response (HTTP {response.status_code})"
            ) from e
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected {operation} response (HTTP {response.status_code})")
        return data

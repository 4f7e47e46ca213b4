import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from requests.cookies import RequestsCookieJar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CookieData:
    """Serializable representation of an HTTP cookie."""

    name: str
    value: str
    domain: str
    path: str = "/"
    expires: Optional[int] = None
    secure: bool = False
    http_only: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires,
            "secure": self.secure,
            "httpOnly": self.http_only,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CookieData":
        expires = data.get("expires")
        return cls(
            name=str(data["name"]),
            value=str(data["value"]),
            domain=str(data["domain"]),
            path=str(data.get("path") or "/"),
            expires=int(expires) if expires is not None else None,
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("httpOnly", False)),
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Durable form of a session, produced by export and consumed by restore."""

    cookies: List[CookieData]
    company_id: Optional[str]
    csrf_token: Optional[str]
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "cookies": [cookie.to_dict() for cookie in self.cookies],
            "companyId": self.company_id,
            "csrfToken": self.csrf_token,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionSnapshot":
        """Build a snapshot from its JSON form. Unknown keys are ignored.

        Raises:
            KeyError, TypeError, ValueError: If the data is malformed
        """
        if not isinstance(data, dict):
            raise TypeError("Session snapshot must be a JSON object")

        timestamp = datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return cls(
            cookies=[CookieData.from_dict(cookie) for cookie in data.get("cookies") or []],
            company_id=data.get("companyId"),
            csrf_token=data.get("csrfToken"),
            timestamp=timestamp,
        )


def _is_http_only(cookie) -> bool:
    return cookie.has_nonstandard_attr("HttpOnly") or cookie.has_nonstandard_attr("httponly")


@dataclass
class SessionState:
    """Mutable session record owned by the auth manager.

    ``company_id`` and ``csrf_token`` are either both set (login completed)
    or both unset. Cookies may be present without them, e.g. right after a
    restore that has not been validated yet.
    """

    cookies: RequestsCookieJar = field(default_factory=RequestsCookieJar)
    company_id: Optional[str] = None
    csrf_token: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None

    @property
    def is_logged_in(self) -> bool:
        return self.company_id is not None and self.csrf_token is not None

    def cookie_records(self) -> List[CookieData]:
        """Return the cookie jar contents, sorted by domain, path and name."""
        records = [
            CookieData(
                name=cookie.name,
                value=cookie.value or "",
                domain=cookie.domain,
                path=cookie.path or "/",
                expires=cookie.expires,
                secure=bool(cookie.secure),
                http_only=_is_http_only(cookie),
            )
            for cookie in self.cookies
        ]
        return sorted(records, key=lambda c: (c.domain, c.path, c.name))

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            cookies=self.cookie_records(),
            company_id=self.company_id,
            csrf_token=self.csrf_token,
            timestamp=datetime.now(timezone.utc),
        )

    def restore(self, snapshot: SessionSnapshot) -> None:
        """Load a snapshot into this state.

        Each cookie is stored under its own domain and path. Company id and
        CSRF token are copied as they are.
        """
        for cookie in snapshot.cookies:
            rest = {"HttpOnly": None} if cookie.http_only else {}
            logger.debug(f"Restoring cookie {cookie.name} for {cookie.domain}{cookie.path}")
            self.cookies.set(
                cookie.name,
                cookie.value,
                domain=cookie.domain,
                path=cookie.path,
                expires=cookie.expires,
                secure=cookie.secure,
                rest=rest,
            )
        self.company_id = snapshot.company_id
        self.csrf_token = snapshot.csrf_token
        self.last_refreshed_at = snapshot.timestamp


class FileSessionStore:
    """Persists session snapshots as a JSON file."""

    def __init__(self, filepath):
        """Initialize the store.

        Args:
            filepath: Path of the session JSON file
        """
        self.filepath = Path(filepath)

    def save(self, snapshot: SessionSnapshot) -> None:
        """Write the snapshot atomically.

        Raises:
            OSError: If the file cannot be written
        """
        content = json.dumps(snapshot.to_dict(), indent=2)
        directory = self.filepath.parent
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", dir=directory, prefix=f".{self.filepath.name}.", suffix=".tmp",
                delete=False, encoding="utf-8"
            ) as f:
                tmp_path = f.name
                f.write(content)
            os.replace(tmp_path, self.filepath)
        except OSError as e:
            logger.error(f"✗ Failed to save session to {self.filepath}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Session saved to {self.filepath}")

    def load(self) -> Optional[SessionSnapshot]:
        """Read the snapshot.

        Returns:
            SessionSnapshot or None if the file is missing or unreadable
        """
        if not self.filepath.exists():
            logger.debug(f"No session file found at {self.filepath}")
            return None

        try:
            with open(self.filepath, "r", encoding="utf-8") as f:
                snapshot = SessionSnapshot.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError, AttributeError, OverflowError) as e:
            logger.warning(f"Session file at {self.filepath} is invalid, will re-authenticate: {e}")
            return None

        logger.debug(f"Session loaded from {self.filepath}")
        return snapshot

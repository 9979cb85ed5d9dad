"""
Bitaxe Dashboard - Authentication
===================================
Session tokens, the credential store, and the authentication gate that sits
in front of protected routes.

Security model:
- Users and password hashes live in config/access.json (username -> sha256
  hex). The browser hashes the password before sending it, so the clear
  password never crosses the wire. There is no salt or key stretching.
- On login a signed JWT is issued in an HttpOnly, SameSite=Strict cookie
  named "sessionToken". The server keeps no session table: a token is valid
  exactly when its signature checks out and it has not expired.
- The JWT secret and lifetime come from config/jsonWebTokenKey.json, read
  once at startup. If that file is unusable the server refuses to start.

Gate behaviour (only for routes that require auth, and only while
disable_authentication is false):
    no cookie            -> 302 /login
    invalid/expired JWT  -> 302 /login and an expiring cookie (Max-Age=0)
    valid JWT            -> Identity(username) for the handler
"""

import os
import re
import json
import hmac
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import unquote

from jose import jwt, JWTError, ExpiredSignatureError
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from dashboard.errors import CredentialStoreError, KeyFileError

logger = logging.getLogger(__name__)


JWT_ALGORITHM = "HS256"
KEY_FILENAME = "jsonWebTokenKey.json"
ACCESS_FILENAME = "access.json"
SESSION_COOKIE = "sessionToken"
LOGIN_PATH = "/login"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


@dataclass(frozen=True)
class TokenError:
    """
    Structured token failure. Returned, never raised.

    Attributes:
        reason:  "signature", "malformed", "expired" or "create".
        message: Underlying library message, for logs.
    """
    reason: str
    message: str
    error: bool = True


@dataclass(frozen=True)
class Identity:
    """The authenticated user, handed to routes that ask for it."""
    username: str


def parse_expires_in(value: Any) -> int:
    """
    Parse a token lifetime into seconds.

    Accepts an int, a numeric string, or a number with an s/m/h/d suffix
    ("90", "30m", "1h", "7d").

    Raises:
        ValueError: If the value is not a positive duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid expiresIn value: {value!r}")
    if isinstance(value, (int, float)):
        seconds = int(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValueError(f"Invalid expiresIn value: {value!r}")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"expiresIn must be positive, got {value!r}")
    return seconds


class TokenService:
    """
    Creates and verifies signed session tokens.

    Attributes:
        expires_in: Token lifetime in seconds (also the cookie Max-Age).
    """

    def __init__(self, secret: str, expires_in: int,
                 clock: Callable[[], datetime] | None = None):
        self._secret = secret
        self.expires_in = expires_in
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_key_file(cls, path: str) -> "TokenService":
        """
        Load the secret and lifetime from jsonWebTokenKey.json.

        Raises:
            KeyFileError: If the file is missing, unreadable, or lacks
                          jsonWebTokenKey / expiresIn.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise KeyFileError(f"{path} not found") from None
        except (json.JSONDecodeError, OSError) as e:
            raise KeyFileError(f"Could not read {path}: {e}") from e

        if not isinstance(data, dict) or not data.get("jsonWebTokenKey") or not data.get("expiresIn"):
            raise KeyFileError(f'"jsonWebTokenKey" or "expiresIn" key not found in {path}')

        try:
            expires_in = parse_expires_in(data["expiresIn"])
        except ValueError as e:
            raise KeyFileError(str(e)) from e

        return cls(str(data["jsonWebTokenKey"]), expires_in)

    def create(self, payload: dict) -> str | TokenError:
        """Sign payload with an issued-at and an expiry claim."""
        issued_at = self._clock()
        claims = dict(payload)
        claims["iat"] = int(issued_at.timestamp())
        claims["exp"] = int((issued_at + timedelta(seconds=self.expires_in)).timestamp())
        try:
            return jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)
        except (JWTError, TypeError, ValueError) as e:
            logger.error("JWT creation error: %s", e)
            return TokenError("create", str(e))

    def verify(self, token: str) -> dict | TokenError:
        """
        Check signature and expiry.

        Returns:
            The decoded claims (always including "username"), or a TokenError.
        """
        try:
            claims = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except ExpiredSignatureError as e:
            return TokenError("expired", str(e))
        except JWTError as e:
            reason = "signature" if "Signature verification failed" in str(e) else "malformed"
            return TokenError(reason, str(e))
        except (TypeError, ValueError, AttributeError) as e:
            return TokenError("malformed", str(e))

        if not isinstance(claims.get("username"), str):
            return TokenError("malformed", "Token has no username claim")
        return claims


# -- Cookies ------------------------------------------------------------------

def parse_cookies(header: str | None) -> dict[str, str]:
    """
    Parse a Cookie header into a dict.

    Segments are split on ';' and then on the first '='. Names are trimmed,
    values trimmed and URL-decoded. Segments with an empty name or value are
    skipped.
    """
    cookies: dict[str, str] = {}
    if not header:
        return cookies
    for segment in header.split(";"):
        name, _, value = segment.partition("=")
        name = name.strip()
        value = value.strip()
        if not name or not value:
            continue
        cookies[name] = unquote(value)
    return cookies


def session_cookie(token: str, max_age: int) -> str:
    return f"{SESSION_COOKIE}={token}; HttpOnly; Max-Age={max_age}; SameSite=Strict; Path=/"


def expired_session_cookie() -> str:
    return f"{SESSION_COOKIE}=; HttpOnly; Max-Age=0; SameSite=Strict; Path=/"


class AuthGate:
    """Verifies the session cookie of a request against the TokenService."""

    def __init__(self, tokens: TokenService):
        self.tokens = tokens

    def check(self, request: Request) -> Identity | Response:
        """
        Returns:
            The caller's Identity, or a redirect response to send instead of
            running the handler.
        """
        token = parse_cookies(request.headers.get("cookie")).get(SESSION_COOKIE)
        if not token:
            return RedirectResponse(LOGIN_PATH, status_code=302)

        decoded = self.tokens.verify(token)
        if isinstance(decoded, TokenError):
            logger.info("JWT verification failed (%s), redirecting to login", decoded.reason)
            return RedirectResponse(
                LOGIN_PATH,
                status_code=302,
                headers={"Set-Cookie": expired_session_cookie()},
            )
        return Identity(username=decoded["username"])


# -- Credential store -----------------------------------------------------------

def hash_password(password: str) -> str:
    """sha256 hex digest, matching what the login page computes client-side."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


class CredentialStore:
    """
    Reads config/access.json (username -> sha256 hex) on every login, so
    edits take effect without a restart.
    """

    def __init__(self, config_dir: str):
        self.access_path = os.path.join(config_dir, ACCESS_FILENAME)

    def _load(self) -> dict:
        try:
            with open(self.access_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.error("Security warning: %s not found. No logins will be possible.", self.access_path)
            raise CredentialStoreError(f"{self.access_path} not found") from None
        except (json.JSONDecodeError, OSError) as e:
            logger.error("Error reading %s: %s", self.access_path, e)
            raise CredentialStoreError(str(e)) from e
        if not isinstance(data, dict):
            raise CredentialStoreError(f"{self.access_path} must contain a JSON object")
        return data

    async def verify(self, username: str, hashed_password: str) -> bool:
        """
        Raises:
            CredentialStoreError: If access.json is missing or unreadable.
        """
        accounts = await asyncio.to_thread(self._load)
        stored = accounts.get(username)
        if not isinstance(stored, str):
            return False
        return hmac.compare_digest(stored.lower().encode("utf-8"), hashed_password.lower().encode("utf-8"))

"""
MiSub - Authentication Module
==============================
Cookie-based authentication for the admin API.

Security model:
- Single shared admin password (ADMIN_PASSWORD), no user accounts
- The password is bcrypt-hashed once at startup and never kept in plain text
- A successful login sets an HttpOnly "auth_token" cookie holding an HS256
  JWT signed with COOKIE_SECRET
- Expiry is enforced server-side through the token's "exp" claim; the
  cookie's Expires attribute only tells the browser when to drop it
- There is no session registry: logout clears the cookie on the client
  that asked, tokens already issued stay valid until they expire

Login flow:
    1. POST /api/login with {"password": "..."}
    2. Password checked against the bcrypt hash
    3. Set-Cookie: auth_token=<jwt>; Path=/; HttpOnly; SameSite=Lax; Expires=...
    4. Later requests send the cookie; require_auth() validates it
"""

import logging
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from urllib.parse import unquote

import bcrypt
from fastapi import Request
from jose import jwt, JWTError

from misub.errors import AuthError


logger = logging.getLogger(__name__)


COOKIE_NAME = "auth_token"
JWT_ALGORITHM = "HS256"
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


def parse_cookies(cookie_header: str | None) -> dict[str, str]:
    """
    Parse a Cookie request header into a name -> value dict.

    Pairs are separated by ';', name and value by the first '='.
    Values are URL-decoded. Pairs without a name are skipped.

    Args:
        cookie_header: Raw header value, or None.

    Returns:
        Dict of cookie names to decoded values.
    """
    cookies: dict[str, str] = {}
    if not cookie_header:
        return cookies
    for pair in cookie_header.split(";"):
        name, _, value = pair.strip().partition("=")
        name = name.strip()
        if name:
            cookies[name] = unquote(value.strip())
    return cookies


class AuthManager:
    """
    Verifies the admin password and issues/validates session tokens.

    Attributes:
        session_days: Token and cookie lifetime in days.
    """

    def __init__(
        self,
        admin_password: str | None,
        cookie_secret: str | None,
        session_days: int = 7,
    ):
        """
        Initialize the auth manager.

        Args:
            admin_password: Shared admin secret. None disables login.
            cookie_secret:  Token signing key. A random one is generated
                            when missing, so sessions end on restart.
            session_days:   Session lifetime.

        Raises:
            ValueError: If admin_password is longer than bcrypt can hash.
        """
        self.session_days = session_days
        self._password_hash: bytes | None = None

        if admin_password:
            encoded = admin_password.encode("utf-8")
            if len(encoded) > MAX_PASSWORD_BYTES:
                raise ValueError(f"ADMIN_PASSWORD must be at most {MAX_PASSWORD_BYTES} bytes.")
            self._password_hash = bcrypt.hashpw(encoded, bcrypt.gensalt())
        else:
            logger.warning("ADMIN_PASSWORD is not set; all logins will be rejected")

        if not cookie_secret:
            logger.warning("COOKIE_SECRET is not set; using a random per-process secret")
            cookie_secret = bcrypt.gensalt().decode("utf-8")
        self._secret = cookie_secret

    def is_configured(self) -> bool:
        """True if an admin password is set."""
        return self._password_hash is not None

    def verify_password(self, password) -> bool:
        """
        Check a submitted password against the configured one.

        Args:
            password: Value from the login body; non-strings never match.

        Returns:
            True on match.
        """
        if self._password_hash is None or not isinstance(password, str):
            return False
        encoded = password.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        return bcrypt.checkpw(encoded, self._password_hash)

    # -- Tokens ----------------------------------------------------------------

    def create_token(self, now: datetime | None = None) -> str:
        """Generate a signed session token."""
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": "admin",
            "iat": now,
            "exp": now + timedelta(days=self.session_days),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> bool:
        """True if the token is correctly signed and not expired."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return False
        return payload.get("sub") == "admin"

    def is_authenticated(self, cookie_header: str | None) -> bool:
        """True if the Cookie header carries a valid session token."""
        token = parse_cookies(cookie_header).get(COOKIE_NAME)
        if not token:
            return False
        return self.verify_token(token)

    # -- Cookies ---------------------------------------------------------------

    def create_auth_cookie(self, now: datetime | None = None) -> str:
        """
        Build the Set-Cookie value issued on login.

        Returns:
            e.g. "auth_token=<jwt>; Path=/; HttpOnly; SameSite=Lax;
            Expires=Sun, 25 Oct 2026 10:00:00 GMT"
        """
        now = now or datetime.now(timezone.utc)
        expires = format_datetime(now + timedelta(days=self.session_days), usegmt=True)
        token = self.create_token(now)
        return f"{COOKIE_NAME}={token}; Path=/; HttpOnly; SameSite=Lax; Expires={expires}"

    @staticmethod
    def clear_auth_cookie() -> str:
        """Build the Set-Cookie value that removes the session cookie."""
        return f"{COOKIE_NAME}=; Path=/; HttpOnly; Max-Age=0"


def require_auth(auth_manager: AuthManager):
    """
    Create a FastAPI dependency that enforces authentication.

    Usage in routes:
        @router.get("/data", dependencies=[Depends(require_auth(auth_mgr))])
        async def get_data(): ...

    Args:
        auth_manager: The AuthManager instance used for cookie validation.

    Returns:
        A FastAPI dependency function.
    """
    async def _verify(request: Request):
        if not auth_manager.is_authenticated(request.headers.get("cookie")):
            raise AuthError("Unauthorized")
        return True

    return _verify

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass

from taxiinsta.settings import settings


TOKEN_VERSION = "v1"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    expires_at: int


def _b64encode(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def _b64decode(raw: str) -> str:
    padded = raw + "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


class AuthProvider:
    """Issues and verifies signed bearer tokens for opaque user ids.

    Credentials and login flows belong to the identity service; this side only
    needs to trust the user id it is handed.
    """

    def __init__(self, *, secret: str, ttl_seconds: int, trust_header: bool = False):
        if not secret:
            raise RuntimeError("AuthProvider requires a non-empty secret")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self.trust_header = trust_header

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue_token(self, user_id: str, *, now: float | None = None) -> str:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        expires_at = int(now if now is not None else time.time()) + int(self.ttl_seconds)
        payload = f"{TOKEN_VERSION}.{_b64encode(user_id)}.{expires_at}"
        return f"{payload}.{self._sign(payload)}"

    def verify_token(self, token: str | None, *, now: float | None = None) -> TokenClaims | None:
        if not token:
            return None
        try:
            version, user_b64, exp_raw, signature = token.strip().split(".", 3)
        except ValueError:
            return None
        if version != TOKEN_VERSION:
            return None

        payload = f"{version}.{user_b64}.{exp_raw}"
        if not hmac.compare_digest(self._sign(payload), signature):
            return None

        try:
            expires_at = int(exp_raw)
            user_id = _b64decode(user_b64)
        except (ValueError, binascii.Error, UnicodeDecodeError):
            return None

        current = int(now if now is not None else time.time())
        if expires_at < current or not user_id:
            return None
        return TokenClaims(user_id=user_id, expires_at=expires_at)

    def refresh_token(self, token: str | None, *, now: float | None = None) -> str | None:
        claims = self.verify_token(token, now=now)
        if claims is None:
            return None
        return self.issue_token(claims.user_id, now=now)


def build_auth_provider() -> AuthProvider:
    return AuthProvider(
        secret=settings.SESSION_SECRET,
        ttl_seconds=settings.TOKEN_TTL_SECONDS,
        trust_header=settings.AUTH_TRUST_HEADER,
    )


auth_provider = build_auth_provider()

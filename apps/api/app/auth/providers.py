from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import jwt
from fastapi import Header, HTTPException, Request, status
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientError

from app.core.logging import get_logger
from app.core.settings import Settings

logger = get_logger("auth.providers")


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    access_token: str
    email: str | None = None
    role: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


class AuthProvider(Protocol):
    def current_user(self, token: str) -> AuthenticatedUser: ...

    async def sign_out(self, token: str) -> None: ...

    async def aclose(self) -> None: ...


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized()

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized()

    return token.strip()


def _user_from_claims(token: str, claims: Any) -> AuthenticatedUser:
    if not isinstance(claims, dict):
        raise _unauthorized()
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise _unauthorized()
    email = claims.get("email")
    role = claims.get("role")
    return AuthenticatedUser(
        user_id=sub.strip(),
        access_token=token,
        email=email if isinstance(email, str) and email else None,
        role=role if isinstance(role, str) and role else None,
        claims=claims,
    )


class SupabaseJwksAuthProvider:
    """Verifies Supabase access tokens against the project's JWKS endpoint."""

    def __init__(
        self,
        *,
        supabase_url: str,
        anon_key: str,
        issuer: str,
        jwks_url: str,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.supabase_url = supabase_url.rstrip("/")
        self.anon_key = anon_key
        self.issuer = issuer
        self._jwks_client = PyJWKClient(jwks_url)
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    def current_user(self, token: str) -> AuthenticatedUser:
        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(token).key
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256", "ES256"],
                issuer=self.issuer,
                options={"verify_aud": False},
            )
        except (InvalidTokenError, PyJWKClientError, ValueError):
            raise _unauthorized() from None
        return _user_from_claims(token, claims)

    async def sign_out(self, token: str) -> None:
        try:
            response = await self._client.post(
                f"{self.supabase_url}/auth/v1/logout",
                headers={"apikey": self.anon_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "auth.sign_out_failed",
                extra={"component": "auth", "error": type(exc).__name__},
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Sign-out unavailable, please retry.",
            ) from exc
        # 401/404 mean the session is already gone.
        if response.status_code >= 500:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Sign-out unavailable, please retry.",
            )

    async def aclose(self) -> None:
        await self._client.aclose()


class SharedSecretAuthProvider:
    """HS256 tokens signed with the project's JWT secret; sign-out is client-side only."""

    def __init__(self, *, secret: str, issuer: str | None = None) -> None:
        self.secret = secret
        self.issuer = issuer

    def current_user(self, token: str) -> AuthenticatedUser:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                issuer=self.issuer,
                options={"verify_aud": False},
            )
        except InvalidTokenError:
            raise _unauthorized() from None
        return _user_from_claims(token, claims)

    async def sign_out(self, token: str) -> None:
        return None

    async def aclose(self) -> None:
        return None


def create_auth_provider(settings: Settings) -> AuthProvider:
    secret = (settings.SUPABASE_JWT_SECRET or "").strip()
    if secret:
        return SharedSecretAuthProvider(secret=secret, issuer=settings.SUPABASE_ISSUER)
    return SupabaseJwksAuthProvider(
        supabase_url=settings.SUPABASE_URL,
        anon_key=settings.SUPABASE_ANON_KEY,
        issuer=settings.SUPABASE_ISSUER or "",
        jwks_url=settings.SUPABASE_JWKS_URL or "",
        timeout_seconds=settings.PROVIDER_API_TIMEOUT_SECONDS,
    )


def get_auth_provider(request: Request) -> AuthProvider:
    return request.app.state.auth_provider


def current_user(
    request: Request,
    authorization: str | None = Header(default=None),
) -> AuthenticatedUser:
    token = _extract_bearer_token(authorization)
    return get_auth_provider(request).current_user(token)

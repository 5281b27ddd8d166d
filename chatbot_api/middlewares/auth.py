from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, Header
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_api.core.errors import AuthenticationError, PermissionDeniedError
from chatbot_api.core.security import verify_supabase_token
from chatbot_api.db.session import get_session
from chatbot_api.services.api_keys import verify_platform_api_key

TEST_MODE_KEY = "test-mode"


@dataclass(frozen=True)
class AuthContext:
    """Quién llama: una key de plataforma o la consola de pruebas (test-mode + JWT)."""
    user_id: str
    api_key_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    avatar_restriction: Optional[str] = None
    test_mode: bool = False

    def require_scope(self, scope: str, message: Optional[str] = None) -> None:
        # test-mode es el dueño logueado: tiene todos los scopes
        if self.test_mode:
            return
        if scope not in self.scopes:
            raise PermissionDeniedError(message or f"API key does not have {scope} permission")

    def require_avatar(self, avatar_id: str) -> None:
        if self.avatar_restriction and str(self.avatar_restriction) != str(avatar_id):
            raise PermissionDeniedError("API key does not have access to this avatar")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


async def _claims_from_bearer(authorization: Optional[str], missing_message: str) -> dict:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError(missing_message)
    try:
        claims = await verify_supabase_token(token)
    except JWTError:
        raise AuthenticationError("Invalid session token")
    if not claims.get("sub"):
        raise AuthenticationError("Invalid session token")
    return claims


async def current_user(authorization: Optional[str] = Header(default=None)) -> dict:
    """Usuario del dashboard (Bearer JWT de Supabase)."""
    claims = await _claims_from_bearer(authorization, "Missing bearer token")
    # devolvemos claims mínimos
    return {"sub": claims["sub"], "email": claims.get("email")}


async def api_key_auth(
    x_api_key: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> AuthContext:
    """x-api-key de plataforma, o x-api-key: test-mode + Authorization: Bearer <jwt>."""
    if not x_api_key:
        raise AuthenticationError("Missing API key. Include x-api-key header.")

    if x_api_key == TEST_MODE_KEY:
        claims = await _claims_from_bearer(authorization, "Test mode requires authorization header")
        return AuthContext(user_id=str(claims["sub"]), test_mode=True)

    grant = await verify_platform_api_key(session, x_api_key)
    if not grant:
        raise AuthenticationError("Invalid or inactive API key")
    return AuthContext(
        user_id=grant.user_id,
        api_key_id=grant.key_id,
        scopes=list(grant.scopes),
        avatar_restriction=grant.avatar_id,
    )

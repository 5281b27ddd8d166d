import base64
import hashlib
import time

import httpx
from jose import jwt, JWTError

from chatbot_api.core.config import settings

# Cache de JWKS por proceso (~5 min)
_jwks_cache = {"jwks": None, "ts": 0.0}
JWKS_TTL_SECONDS = 300

def hash_api_key(api_key: str) -> str:
    """SHA-256 hex del key de plataforma; en DB solo se guarda el hash."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()

def decode_stored_secret(encoded: str) -> str:
    # user_api_keys.api_key_encrypted se guarda en base64
    return base64.b64decode(encoded).decode("utf-8").strip()

async def get_jwks() -> dict:
    if not _jwks_cache["jwks"] or time.time() - _jwks_cache["ts"] > JWKS_TTL_SECONDS:
        async with httpx.AsyncClient(timeout=5) as client:
            r = await client.get(settings.supabase_jwks_url)
            r.raise_for_status()
            _jwks_cache["jwks"] = r.json()
            _jwks_cache["ts"] = time.time()
    return _jwks_cache["jwks"]

async def verify_supabase_token(token: str) -> dict:
    """Valida un access token de Supabase (HS256 con el secret del proyecto o RS* vía JWKS)."""
    issuer = f"{settings.supabase_project_url}/auth/v1"
    header = jwt.get_unverified_header(token)
    algorithm = header.get("alg", "")

    if algorithm == "HS256":
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience="authenticated",
            issuer=issuer,
        )

    if algorithm.startswith("RS") or algorithm.startswith("ES"):
        jwks = await get_jwks()
        key = next((k for k in jwks.get("keys", []) if k.get("kid") == header.get("kid")), None)
        if not key:
            raise JWTError("JWKS key not found")
        return jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", algorithm)],
            audience="authenticated",
            issuer=issuer,
        )

    raise JWTError(f"Unsupported algorithm: {algorithm}")

"""Bearer token verification (JWT, HS256).

Two token shapes are accepted, both signed with JWT_SECRET:

  service tokens   {"user_id", "tenant_id", "email", "exp"}
                   issued by create_access_token (scripts, tests)
  Supabase tokens  {"sub", "email", "app_metadata": {"tenant_id"}, "aud", "exp"}
                   the dashboard's session tokens

Either way the caller gets a TokenData scoped to one tenant. An empty
tenant_id is valid here; server.require_tenant turns it into a 403.
"""
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv
import jwt
from pydantic import BaseModel

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

JWT_SECRET = (os.environ.get('JWT_SECRET') or '').strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is required")

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = os.environ.get('JWT_AUDIENCE', 'authenticated')
SERVICE_TOKEN_HOURS = int(os.environ.get('SERVICE_TOKEN_HOURS', '24'))


class TokenData(BaseModel):
    user_id: str
    tenant_id: str
    email: str
    exp: datetime


def create_access_token(user_id: str, tenant_id: str, email: str, expires_in: Optional[timedelta] = None) -> str:
    expiration = datetime.now(timezone.utc) + (expires_in or timedelta(hours=SERVICE_TOKEN_HOURS))
    return jwt.encode(
        {"user_id": user_id, "tenant_id": tenant_id, "email": email, "exp": expiration},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def _claims_to_token_data(claims: dict) -> TokenData:
    user_id = claims.get("user_id") or claims.get("sub")
    if not user_id:
        raise KeyError("user_id")
    app_metadata = claims.get("app_metadata") or {}
    return TokenData(
        user_id=str(user_id),
        tenant_id=claims.get("tenant_id") or app_metadata.get("tenant_id") or "",
        email=claims.get("email") or "",
        exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
    )


def verify_token(token: str) -> Optional[TokenData]:
    """Decode a token; None when it is expired, tampered with or missing claims"""
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp"], "verify_aud": False},
        )
        # service tokens carry no aud
        if "aud" in claims:
            audiences = claims["aud"] if isinstance(claims["aud"], list) else [claims["aud"]]
            if JWT_AUDIENCE not in audiences:
                raise jwt.InvalidAudienceError(f"Unexpected audience {claims['aud']}")
        return _claims_to_token_data(claims)
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        return None
    except KeyError as e:
        logger.warning(f"Token missing claim: {e}")
        return None

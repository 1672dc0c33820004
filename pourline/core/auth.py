"""Authentication dependencies: buyer session JWTs and terminal API keys."""

import hmac
from dataclasses import dataclass

import jwt as pyjwt
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pourline.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)

# In-memory cache of provisioned buyer IDs to avoid DB queries on every request
_provisioned_cache: set[str] = set()


@dataclass(frozen=True)
class AuthenticatedBuyer:
    """Buyer extracted from an identity-service session JWT."""

    user_id: str
    claims: dict


@dataclass(frozen=True)
class Terminal:
    """A scanning terminal or dispensing controller."""

    terminal_id: str


def decode_buyer_jwt(token: str) -> AuthenticatedBuyer:
    """Verify and decode a buyer session JWT.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    settings = get_settings()
    if not settings.auth_jwt_secret:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured")

    try:
        payload = pyjwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={
                "verify_exp": True,
                "require": ["sub", "exp"],
            },
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidAudienceError:
        raise HTTPException(status_code=401, detail="Unauthorized audience (aud mismatch)")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    return AuthenticatedBuyer(user_id=str(sub), claims=payload)


async def require_buyer(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedBuyer:
    """FastAPI dependency that extracts and validates the buyer JWT.

    Also provisions the Buyer row on first API call.

    Usage::

        @router.post("/orders")
        async def create(buyer: AuthenticatedBuyer = Depends(require_buyer)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    buyer = decode_buyer_jwt(credentials.credentials)

    if buyer.user_id not in _provisioned_cache:
        from pourline.core.provisioning import provision_buyer_on_first_call

        await provision_buyer_on_first_call(buyer.user_id, buyer.claims)
        _provisioned_cache.add(buyer.user_id)

    # Set user_id on request state for downstream use (error handlers, audit logging)
    request.state.user_id = buyer.user_id

    return buyer


async def require_terminal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    x_terminal_id: str | None = Header(default=None),
) -> Terminal:
    """FastAPI dependency for scanning terminals and dispensing controllers.

    The bearer credential is the shared terminal API key (constant-time
    compare); ``X-Terminal-ID`` names the device for audit and rate limiting.
    """
    settings = get_settings()
    if not settings.terminal_api_key:
        raise HTTPException(status_code=500, detail="Terminal authentication is misconfigured")
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    if not hmac.compare_digest(credentials.credentials.encode(), settings.terminal_api_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid terminal key")
    if not x_terminal_id:
        raise HTTPException(status_code=400, detail="Missing X-Terminal-ID header")

    request.state.user_id = f"terminal:{x_terminal_id}"
    return Terminal(terminal_id=x_terminal_id)

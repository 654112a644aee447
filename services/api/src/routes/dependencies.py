from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.errors import Unauthenticated
from models.identity import Identity
from utils import log

logger = log.get_logger(__name__)

security = HTTPBearer(auto_error=False)


def _claim_email(payload: dict) -> Optional[str]:
    email = payload.get("email")
    # Handle potential list format for email
    if isinstance(email, list):
        if not email:
            return None
        item = email[0]
        email = item.get("value") if isinstance(item, dict) else str(item)
    return str(email) if email else None


async def current_identity_get(
    request: Request,
    token: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Identity]:
    """Resolve the bearer token to an Identity; None when no credential was sent.

    Public queries accept an anonymous caller. Mutations resolve the identity
    through ``user_resolve``, which rejects None with Unauthenticated.
    """
    if not hasattr(request.app.state, "auth_client"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No auth_client")
    if token is None:
        return None

    payload = request.app.state.auth_client.decode_jwt(token.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    return Identity(
        caller_id=payload["sub"],
        display_name=payload.get("name"),
        email=_claim_email(payload),
        avatar_url=payload.get("picture"),
    )


async def require_identity(identity: Optional[Identity] = Depends(current_identity_get)) -> Identity:
    if identity is None:
        raise Unauthenticated()
    return identity

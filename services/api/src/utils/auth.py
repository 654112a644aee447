"""OIDC bearer-token verification against the issuer's JWKS."""

from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel

from . import log

logger = log.get_logger(__name__)


class AuthClientConfig(BaseModel):
    jwk_url: str
    audience: Optional[str] = None
    issuer: Optional[str] = None
    algorithms: list = ["RS256"]


class AuthClient:
    def __init__(self, config: AuthClientConfig):
        self.config = config
        self.jwk_client = jwt.PyJWKClient(config.jwk_url, cache_keys=True)

    def decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified claims, or None when the token is not acceptable."""
        try:
            signing_key = self.jwk_client.get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=self.config.algorithms,
                audience=self.config.audience,
                issuer=self.config.issuer,
                options={"verify_aud": self.config.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
        except jwt.PyJWKClientError as e:
            logger.warning(f"Could not resolve signing key: {e}")
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected invalid token: {e}")
        return None

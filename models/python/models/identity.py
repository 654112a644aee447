from typing import Optional
from pydantic import BaseModel


class Identity(BaseModel):
    """Principal resolved by the identity provider for an opaque credential."""
    caller_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None

"""Authentication schemas."""

from pydantic import BaseModel, Field

ROLE_CUSTOMER = "customer"
ROLE_TRANSCRIBER = "transcriber"
ROLE_ADMIN = "admin"
KNOWN_ROLES = frozenset({ROLE_CUSTOMER, ROLE_TRANSCRIBER, ROLE_ADMIN})


class AuthPrincipal(BaseModel):
    """Normalized authenticated principal used by business services."""

    user_id: str = Field(min_length=1)
    role: str = Field(default=ROLE_CUSTOMER, min_length=1)

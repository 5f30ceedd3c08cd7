"""Resolved identity passed explicitly into every core operation."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    """Role of a member within a tenant."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    COORDINATOR = "COORDINATOR"


class TenantContext(BaseModel):
    """The ``(tenant_id, user_id, role)`` triple supplied by the identity provider.

    The scheduling core never authenticates; it only scopes store access by
    ``tenant_id`` and records ``user_id`` in the audit trail.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    role: UserRole = UserRole.COORDINATOR

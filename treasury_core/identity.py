"""
Caller identity passed into engine operations.

Authentication and session issuance happen outside the engine; callers hand
in an already-authenticated ``AuthUser``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class UserRole(Enum):
    """Organization roles relevant to money movement"""
    OWNER = "owner"
    ADMIN = "admin"
    EMPLOYEE = "employee"


@dataclass(frozen=True)
class AuthUser:
    user_id: str
    organization_id: str
    role: UserRole = UserRole.EMPLOYEE
    department_id: Optional[str] = None

    @property
    def is_owner(self) -> bool:
        return self.role == UserRole.OWNER

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.OWNER, UserRole.ADMIN)

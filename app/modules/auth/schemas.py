from pydantic import BaseModel
from typing import Optional, FrozenSet
from uuid import UUID


# Auth context schemas
class AuthContext(BaseModel):
    """Identidad del llamador resuelta por el proveedor de autenticación."""
    user_id: UUID
    tenant_id: Optional[UUID] = None
    user_role: Optional[str] = None
    permissions: FrozenSet[str] = frozenset()

    def can(self, resource: str, action: str) -> bool:
        return f"{resource}:{action}" in self.permissions

"""
Dependencias de autenticación para FastAPI.

La identidad viene del proveedor externo como un JWT firmado; aquí solo se
resuelve el contexto (usuario, empresa, rol) y los permisos derivados del rol.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import verify_token

# Security scheme
security = HTTPBearer()

# Permisos por rol, formato "recurso:acción"
ROLE_PERMISSIONS = {
    "owner": {"cash:read", "cash:open", "cash:close", "cash:move", "cash:reconcile"},
    "admin": {"cash:read", "cash:open", "cash:close", "cash:move", "cash:reconcile"},
    "cashier": {"cash:read", "cash:open", "cash:close", "cash:move"},
    "seller": {"cash:read", "cash:open", "cash:close", "cash:move"},
    "accountant": {"cash:read", "cash:reconcile"},
    "viewer": {"cash:read"},
}


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        """
        Obtener contexto de autenticación completo con tenant.
        Requiere X-Company-ID header o token de contexto.
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        payload = verify_token(credentials.credentials)
        user_id = payload.get("sub")
        token_type = payload.get("type", "access")
        if user_id is None:
            raise credentials_exception

        if token_type == "context":
            # Token de contexto ya tiene tenant_id
            tenant_id = payload.get("tenant_id")
            user_role = payload.get("user_role")
        else:
            tenant_id = getattr(request.state, "tenant_id", None) or request.headers.get("X-Company-ID")
            user_role = payload.get("role")

        try:
            user_uuid = UUID(str(user_id))
            tenant_uuid = UUID(str(tenant_id)) if tenant_id else None
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="ID de usuario o empresa inválido"
            )

        # El header debe coincidir con la empresa del token de contexto
        header_tenant = getattr(request.state, "tenant_id", None)
        if token_type == "context" and header_tenant and tenant_uuid and header_tenant != tenant_uuid:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No tienes acceso a esta empresa"
            )

        return AuthContext(
            user_id=user_uuid,
            tenant_id=tenant_uuid,
            user_role=user_role,
            permissions=frozenset(ROLE_PERMISSIONS.get(user_role or "", set()))
        )

    @staticmethod
    def require_permission(resource: str, action: str):
        """
        Dependencia para requerir un permiso "recurso:acción".
        """
        def permission_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.tenant_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Se requiere seleccionar una empresa"
                )

            if not auth_context.can(resource, action):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Permiso requerido: {resource}:{action}"
                )

            return auth_context
        return permission_checker


# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_permission = AuthDependencies.require_permission

"""
Middleware multi-organización y cabeceras de seguridad
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Company-ID"


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Lee la organización del header X-Company-ID y la deja en
    request.state.tenant_id para las dependencias de auth.
    """

    # Rutas sin contexto de organización
    EXEMPT_PREFIXES = ("/docs", "/redoc", "/openapi.json", "/health")
    EXEMPT_EXACT = ("/",)

    def _is_exempt(self, request: Request) -> bool:
        path = request.url.path
        if request.method == "OPTIONS" or path in self.EXEMPT_EXACT:
            return True
        return path.startswith(self.EXEMPT_PREFIXES)

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request):
            return await call_next(request)

        raw_tenant = request.headers.get(TENANT_HEADER)
        if not raw_tenant:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": f"Falta el header {TENANT_HEADER}"}
            )

        try:
            tenant_id = UUID(raw_tenant)
        except ValueError:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": f"{TENANT_HEADER} debe ser un UUID válido"}
            )

        request.state.tenant_id = tenant_id
        logger.debug(f"{request.method} {request.url.path} org={tenant_id}")

        response = await call_next(request)
        response.headers["X-Tenant-ID"] = str(tenant_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Cabeceras de seguridad en todas las respuestas"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        # Los CSV exportados no deben quedar en caches compartidas
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        return response

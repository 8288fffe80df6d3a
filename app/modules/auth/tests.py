"""
Tests de autenticación: tokens, contexto de empresa y permisos por rol
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi import HTTPException

from app.modules.auth.dependencies import ROLE_PERMISSIONS
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import create_access_token, create_context_token, verify_token


class TestTokens:

    def test_access_token_roundtrip(self):
        user_id = uuid4()
        payload = verify_token(create_access_token({"sub": str(user_id), "role": "cashier"}))
        assert payload["sub"] == str(user_id)
        assert payload["type"] == "access"

    def test_expired_token(self):
        token = create_access_token({"sub": str(uuid4())}, expires_delta=timedelta(seconds=-1))
        with pytest.raises(HTTPException) as exc_info:
            verify_token(token)
        assert exc_info.value.status_code == 401

    def test_context_token_type(self):
        payload = verify_token(create_context_token({"sub": str(uuid4()), "tenant_id": str(uuid4())}))
        assert payload["type"] == "context"


class TestPermissions:

    def test_can(self):
        context = AuthContext(user_id=uuid4(), permissions=frozenset(ROLE_PERMISSIONS["accountant"]))
        assert context.can("cash", "reconcile")
        assert not context.can("cash", "open")

    def test_viewer_is_read_only(self):
        assert ROLE_PERMISSIONS["viewer"] == {"cash:read"}


class TestAuthContextEndpoint:

    def test_context_token_for_other_company_rejected(self, client, org_id, user_id):
        token = create_context_token({"sub": str(user_id), "tenant_id": str(uuid4()), "user_role": "owner"})
        response = client.get(
            "/api/v1/cash/session/current",
            headers={"Authorization": f"Bearer {token}", "X-Company-ID": str(org_id)}
        )
        assert response.status_code == 403

    def test_context_token_for_same_company(self, client, org_id, user_id):
        token = create_context_token({"sub": str(user_id), "tenant_id": str(org_id), "user_role": "owner"})
        response = client.get(
            "/api/v1/cash/session/current",
            headers={"Authorization": f"Bearer {token}", "X-Company-ID": str(org_id)}
        )
        assert response.status_code == 200

    def test_unknown_role_has_no_permissions(self, client, auth_headers):
        response = client.get("/api/v1/cash/sessions", headers=auth_headers("intruder"))
        assert response.status_code == 403

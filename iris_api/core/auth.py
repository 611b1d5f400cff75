from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, HTTPException, status

from iris_api.core.config import settings


@dataclass(frozen=True)
class AdminPrincipal:
    admin_id: str


def parse_admin_tokens(raw: str) -> dict[str, str]:
    """Map token to admin id from an "id:token,id:token" string; malformed pairs are skipped."""
    token_to_admin: dict[str, str] = {}
    for chunk in (raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        admin_id, token = item.split(":", 1)
        admin = admin_id.strip()
        token_value = token.strip()
        if not admin or not token_value:
            continue
        token_to_admin[token_value] = admin
    return token_to_admin


def _resolve_token_mapping() -> dict[str, str]:
    return parse_admin_tokens(settings.admin_tokens)


def get_current_admin(
    authorization: Annotated[str | None, Header(alias="Authorization")] = None,
) -> AdminPrincipal:
    if not settings.admin_auth_enabled:
        return AdminPrincipal(admin_id="local-admin")

    token_to_admin = _resolve_token_mapping()
    if not token_to_admin:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKENS is not configured",
        )

    auth_header = str(authorization or "").strip()
    if not auth_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing Authorization header")

    scheme, _, credential = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid Authorization header")

    admin_id = token_to_admin.get(credential.strip())
    if not admin_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid access token")

    return AdminPrincipal(admin_id=admin_id)

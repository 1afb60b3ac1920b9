"""Firebase authentication for the admin endpoints."""

import asyncio
import json
import os
from typing import Any, Optional

import firebase_admin
from fastapi import Header, HTTPException
from firebase_admin import auth, credentials

from .settings import settings

_firebase_app: Optional[firebase_admin.App] = None

ANONYMOUS_ADMIN = {"uid": "anonymous", "auth": "disabled"}


def _load_firebase_credentials() -> Optional[credentials.Base]:
    """Load Firebase credentials from env, supporting JSON content or a file path."""
    raw_value = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "").strip()
    if not raw_value:
        return None
    if raw_value.startswith("{"):
        return credentials.Certificate(json.loads(raw_value))
    return credentials.Certificate(raw_value)


def init_firebase() -> None:
    """Initialise Firebase Admin SDK once per process."""
    global _firebase_app
    if _firebase_app:
        return
    cred = _load_firebase_credentials()
    if cred is None:
        _firebase_app = firebase_admin.initialize_app()
        return
    _firebase_app = firebase_admin.initialize_app(cred)


def verify_firebase_token(token: str) -> dict[str, Any]:
    """Verify a Firebase ID token and return the decoded claims."""
    init_firebase()
    if not token:
        raise HTTPException(status_code=401, detail="Missing Firebase token")
    try:
        return auth.verify_id_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid Firebase token") from exc


def check_admin(claims: dict[str, Any], allowed_uids: set[str]) -> dict[str, Any]:
    if allowed_uids and claims.get("uid") not in allowed_uids:
        raise HTTPException(status_code=403, detail="Not authorised to manage analytics data")
    return claims


async def require_admin(authorization: str = Header(default="")) -> dict[str, Any]:
    """FastAPI dependency guarding destructive dashboard operations.

    With ``FUNNEL_REQUIRE_ADMIN_AUTH`` off every caller is let through.
    Otherwise a Bearer Firebase ID token is required, and when
    ``FUNNEL_ADMIN_UIDS`` is set its uid must be listed.
    """
    if not settings.require_admin_auth:
        return dict(ANONYMOUS_ADMIN)
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    token = authorization.split(" ", 1)[1].strip()
    claims = await asyncio.to_thread(verify_firebase_token, token)
    return check_admin(claims, settings.admin_uid_set())

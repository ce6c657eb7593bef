from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "fuelflow_session"


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"code": code, "message": message})


def _session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise _unauthorized("missing_token", "missing session token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    """
    Resolve a bearer or cookie session token to a principal with its permission codes.
    Sessions are issued by the login service and stored hashed.
    """
    token = _session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s AND u.is_active = true
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            if not row or not row["is_active"] or row["expires_at"] < datetime.now(timezone.utc):
                raise _unauthorized("invalid_token", "session expired or revoked")
            cur.execute(
                """
                SELECT DISTINCT p.code
                FROM user_roles ur
                JOIN role_permissions rp ON rp.role_id = ur.role_id
                JOIN permissions p ON p.id = rp.permission_id
                WHERE ur.user_id = %s
                """,
                (row["user_id"],),
            )
            permissions = {r["code"] for r in cur.fetchall() or []}
    return {
        "session_id": row["session_id"],
        "user_id": row["user_id"],
        "email": row["email"],
        "permissions": permissions,
    }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"], "permissions": session["permissions"]}


def require_permission(code: str):
    # Write permissions imply read on the same area (cashbook:write covers cashbook:read).
    area = code.split(":", 1)[0]

    def _dep(user=Depends(get_current_user)):
        granted = user.get("permissions") or set()
        if code not in granted and not (code.endswith(":read") and f"{area}:write" in granted):
            raise HTTPException(
                status_code=403,
                detail={"code": "permission_denied", "message": f"missing permission {code}"},
            )
        return True
    return _dep

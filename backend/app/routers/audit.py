from fastapi import APIRouter, Depends
from typing import Optional
from uuid import UUID

from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..ledger_errors import invalid

router = APIRouter(prefix="/audit", tags=["audit"])


def _permission_for_entity(entity_type: str) -> str:
    """
    Map entity types to module permissions so per-document timelines don't require `reports:read`.
    """
    t = (entity_type or "").strip().lower()
    if t.startswith("stock"):
        return "stock:read"
    if t in {"sale", "invoice", "client", "project"}:
        return "sales:read"
    if t.startswith("cashbook") or t.endswith("allocation") or t == "account_head":
        return "cashbook:read"
    return "reports:read"


def _parse_uuid_optional(value: Optional[str], field_name: str) -> Optional[str]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return str(UUID(raw))
    except ValueError:
        raise invalid("invalid_id", f"{field_name} must be a valid UUID")


@router.get("/logs")
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action_prefix: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
    user=Depends(get_current_user),
):
    """
    Per-document audit trail (who generated, allocated or voided what, and when).
    """
    if limit <= 0 or limit > 500:
        raise invalid("invalid_limit", "limit must be between 1 and 500")
    if offset < 0:
        raise invalid("invalid_offset", "offset must be >= 0")

    entity_type = (entity_type or "").strip() or None
    action_prefix = (action_prefix or "").strip() or None
    entity_id = _parse_uuid_optional(entity_id, "entity_id")

    require_permission(_permission_for_entity(entity_type or ""))(user=user)

    sql = """
        SELECT l.id, l.user_id, u.email AS user_email,
               l.action, l.entity_type, l.entity_id,
               l.details, l.created_at
        FROM audit_logs l
        LEFT JOIN users u ON u.id = l.user_id
        WHERE 1=1
    """
    params: list = []
    if entity_type:
        sql += " AND l.entity_type = %s"
        params.append(entity_type)
    if entity_id:
        sql += " AND l.entity_id = %s::uuid"
        params.append(entity_id)
    if action_prefix:
        sql += " AND l.action LIKE %s"
        params.append(action_prefix + "%")
    sql += " ORDER BY l.created_at DESC, l.id DESC LIMIT %s OFFSET %s"
    params.extend([limit, offset])

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"audit_logs": cur.fetchall()}

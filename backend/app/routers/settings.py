from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from ..audit import write_audit
from ..config import settings as app_settings
from ..db import get_conn, set_lock_timeout
from ..deps import get_current_user, require_permission
from ..ledger_errors import invalid

router = APIRouter(prefix="/settings", tags=["settings"])

SETTINGS_FIELDS = (
    "company_name",
    "company_address",
    "company_phone",
    "company_email",
    "invoice_prefix",
    "default_payment_terms",
    "overdue_threshold_days",
)


class BusinessSettingsUpdate(BaseModel):
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None
    invoice_prefix: Optional[str] = None
    default_payment_terms: Optional[str] = None
    overdue_threshold_days: Optional[int] = None


def load_business_settings(cur) -> dict:
    """
    The singleton settings row, or environment defaults when it was never saved.
    """
    cur.execute(
        f"SELECT {', '.join(SETTINGS_FIELDS)} FROM business_settings WHERE singleton = true"
    )
    row = cur.fetchone()
    if row:
        return dict(row)
    return {
        "company_name": "FuelFlow Trading",
        "company_address": "",
        "company_phone": "",
        "company_email": "",
        "invoice_prefix": app_settings.default_invoice_prefix,
        "default_payment_terms": "Net 30",
        "overdue_threshold_days": app_settings.overdue_threshold_days,
    }


@router.get("/business", dependencies=[Depends(require_permission("reports:read"))])
def get_business_settings():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"settings": load_business_settings(cur)}


@router.patch("/business", dependencies=[Depends(require_permission("settings:write"))])
def update_business_settings(data: BusinessSettingsUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    if "invoice_prefix" in patch:
        prefix = patch["invoice_prefix"].strip().upper()
        if not prefix or not prefix.replace("-", "").isalnum():
            raise invalid("invalid_invoice_prefix", "invoice prefix must be letters/digits")
        patch["invoice_prefix"] = prefix
    if "overdue_threshold_days" in patch and patch["overdue_threshold_days"] < 1:
        raise invalid("invalid_overdue_threshold", "overdue threshold must be at least 1 day")

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                merged = {**load_business_settings(cur), **patch}
                cols = ", ".join(SETTINGS_FIELDS)
                placeholders = ", ".join(["%s"] * len(SETTINGS_FIELDS))
                updates = ", ".join(f"{k} = EXCLUDED.{k}" for k in SETTINGS_FIELDS)
                cur.execute(
                    f"""
                    INSERT INTO business_settings (singleton, {cols})
                    VALUES (true, {placeholders})
                    ON CONFLICT (singleton) DO UPDATE SET {updates}, updated_at = now()
                    RETURNING {cols}
                    """,
                    [merged[k] for k in SETTINGS_FIELDS],
                )
                row = cur.fetchone()
                write_audit(cur, user["user_id"], "business_settings_update", "business_settings", None, patch)
                return {"settings": row}

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from ..audit import write_audit
from ..db import get_conn, set_lock_timeout
from ..deps import get_current_user, require_permission
from ..ledger_errors import conflict, invalid, not_found
from ..validation import ProjectStatus

router = APIRouter(tags=["clients"])


class ClientIn(BaseModel):
    name: str
    contact_person: str = ""
    phone_number: str = ""
    email: str = ""
    address: str = ""
    # When true, a matching `client` account head is created so cashbook receipts can be matched to invoices.
    create_account_head: bool = True


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    contact_person: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


class ProjectIn(BaseModel):
    client_id: str
    name: str
    description: Optional[str] = None
    location: Optional[str] = None
    status: ProjectStatus = "active"


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[ProjectStatus] = None


@router.get("/clients", dependencies=[Depends(require_permission("sales:read"))])
def list_clients():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.contact_person, c.phone_number, c.email, c.address,
                       c.account_head_id, c.created_at
                FROM clients c
                ORDER BY c.name
                """
            )
            return {"clients": cur.fetchall()}


@router.get("/clients/{client_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_client(client_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM clients WHERE id = %s", (client_id,))
            client = cur.fetchone()
            if not client:
                raise not_found("client_not_found", "client not found")
            cur.execute(
                "SELECT * FROM projects WHERE client_id = %s ORDER BY created_at DESC",
                (client_id,),
            )
            projects = cur.fetchall() or []
            return {"client": client, "projects": projects}


@router.post("/clients", dependencies=[Depends(require_permission("sales:write"))])
def create_client(data: ClientIn, user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise invalid("missing_field", "name is required")

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                head_id = None
                if data.create_account_head:
                    cur.execute("SELECT id, type FROM account_heads WHERE name = %s", (name,))
                    head = cur.fetchone()
                    if head and head["type"] != "client":
                        raise conflict("account_head_conflict", f"account head {name!r} exists with type {head['type']}")
                    if head:
                        head_id = head["id"]
                    else:
                        cur.execute(
                            "INSERT INTO account_heads (id, name, type) VALUES (gen_random_uuid(), %s, 'client') RETURNING id",
                            (name,),
                        )
                        head_id = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO clients (id, name, contact_person, phone_number, email, address, account_head_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, data.contact_person, data.phone_number, data.email, data.address, head_id),
                )
                client = cur.fetchone()
                write_audit(cur, user["user_id"], "client_create", "client", client["id"], {"name": name})
                return {"client": client}


@router.patch("/clients/{client_id}", dependencies=[Depends(require_permission("sales:write"))])
def update_client(client_id: str, data: ClientUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    if "name" in patch and not patch["name"].strip():
        raise invalid("missing_field", "name is required")

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(client_id)

    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE clients
                    SET {', '.join(fields)}
                    WHERE id = %s
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise not_found("client_not_found", "client not found")
                write_audit(cur, user["user_id"], "client_update", "client", client_id, patch)
                return {"ok": True}


@router.get("/projects", dependencies=[Depends(require_permission("sales:read"))])
def list_projects(client_id: Optional[str] = None):
    sql = """
        SELECT p.*, c.name AS client_name
        FROM projects p
        JOIN clients c ON c.id = p.client_id
    """
    params: list = []
    if client_id:
        sql += " WHERE p.client_id = %s"
        params.append(client_id)
    sql += " ORDER BY p.created_at DESC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"projects": cur.fetchall()}


@router.post("/projects", dependencies=[Depends(require_permission("sales:write"))])
def create_project(data: ProjectIn, user=Depends(get_current_user)):
    if not (data.name or "").strip():
        raise invalid("missing_field", "name is required")
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM clients WHERE id = %s", (data.client_id,))
                if not cur.fetchone():
                    raise not_found("client_not_found", "client not found")
                cur.execute(
                    """
                    INSERT INTO projects (id, client_id, name, description, location, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (data.client_id, data.name.strip(), data.description, data.location, data.status),
                )
                project = cur.fetchone()
                write_audit(cur, user["user_id"], "project_create", "project", project["id"], {"client_id": data.client_id})
                return {"project": project}


@router.patch("/projects/{project_id}", dependencies=[Depends(require_permission("sales:write"))])
def update_project(project_id: str, data: ProjectUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(project_id)
    with get_conn() as conn:
        set_lock_timeout(conn)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE projects SET {', '.join(fields)} WHERE id = %s RETURNING id",
                    params,
                )
                if not cur.fetchone():
                    raise not_found("project_not_found", "project not found")
                write_audit(cur, user["user_id"], "project_update", "project", project_id, patch)
                return {"ok": True}

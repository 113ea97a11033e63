# billing/services/clients.py
"""Read-only client directory. Invoices store a client reference, not a copy."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from billing.db.schema import clients
from billing.errors import NotFoundError, ValidationError
from billing.models.clients import ClientOut


def get_client_by_id(conn: Connection, client_id: int) -> Optional[ClientOut]:
    row = conn.execute(
        select(clients).where(clients.c.id == client_id)
    ).mappings().first()
    if row is None:
        return None
    return ClientOut.model_validate(dict(row))


def require_client(conn: Connection, client_id: Optional[int]) -> ClientOut:
    if client_id is None:
        raise ValidationError("client_id is required")
    client = get_client_by_id(conn, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")
    return client

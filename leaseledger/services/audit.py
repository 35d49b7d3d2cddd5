"""
Audit log writer.

Entries are added to the caller's session so they commit (or roll back) with
the mutation they describe. A failed audit write aborts the unit of work.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.models.audit import AuditEntry
from leaseledger.models.enums import ActorKind


def json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    return value


def snapshot(obj: Any, fields: tuple[str, ...]) -> dict:
    """JSON-safe dict of selected attributes, for before/after summaries."""
    return {name: json_safe(getattr(obj, name)) for name in fields}


class AuditLog:
    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        *,
        action: str,
        target_kind: str,
        target_id: uuid.UUID | str,
        actor=None,
        before: dict | None = None,
        after: dict | None = None,
        description: str | None = None,
        outcome: str = "success",
    ) -> AuditEntry:
        """Stage one entry. ``actor`` is a Principal, or None for the system."""
        if actor is None:
            actor_kind, actor_id, ip = ActorKind.SYSTEM.value, None, None
        else:
            actor_kind, actor_id, ip = actor.actor_kind.value, actor.id, actor.ip
        entry = AuditEntry(
            actor_kind=actor_kind,
            actor_id=actor_id,
            action=action,
            target_kind=target_kind,
            target_id=str(target_id),
            before=json_safe(before) if before is not None else None,
            after=json_safe(after) if after is not None else None,
            ip_address=ip,
            outcome=outcome,
            description=description,
        )
        self.db.add(entry)
        return entry

"""
Canteen Core — Audit trail

Audit entries never decide the fate of the operation that produced them: a
failed insert is logged and turned into a PartialFailureWarning.
"""
from typing import Any

from canteen.db.unit_of_work import UnitOfWork
from canteen.models.ledger import AuditLogEntry


async def record_audit(
    uow: UnitOfWork,
    actor_id: str | None,
    action: str,
    collection_name: str | None = None,
    document_id: str | None = None,
    changes: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
) -> bool:
    entry = AuditLogEntry(
        actor_id=actor_id,
        action=action,
        collection_name=collection_name,
        document_id=document_id,
        changes=changes or {},
        meta=meta or {},
    )
    return await uow.append_record("audit", entry)

from typing import Any, Dict, Optional
from sqlalchemy.orm import Session
from admissions.models.orm import AuditLog


def record_audit(db: Session, action: str, entity_type: str, entity_id, user_id: Optional[str] = None,
                 changes: Optional[Dict[str, Any]] = None) -> None:
    """Append an audit row inside the caller's transaction."""
    db.add(AuditLog(user_id=user_id, action=action, entity_type=entity_type, entity_id=str(entity_id), changes=changes or {}))

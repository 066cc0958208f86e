import json
import logging
import uuid
from sqlalchemy.orm import Session
from staydesk.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

def log_audit(db: Session, actor_user_id: str, action: str, entity_type: str, entity_id: str, details: dict | None = None):
    db.add(AuditLog(
        id=str(uuid.uuid4()),
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
    ))


def log_rejected_transition(db: Session, actor_user_id: str, entity_type: str, entity_id: str, error) -> None:
    """Record a rejected transition (attempted transition + failed guard) in its own commit.

    Call after rolling back the unit of work that was rejected.
    """
    details = dict(getattr(error, "details", {}) or {})
    logger.warning("Rejected %s on %s %s: %s (%s)", details.get("attempted", "?"), entity_type, entity_id,
                   details.get("guard", "?"), error)
    log_audit(db, actor_user_id, f"{entity_type}.transition_rejected", entity_type, entity_id,
              {"error": getattr(getattr(error, "kind", None), "value", type(error).__name__), "message": str(error), **details})
    db.commit()

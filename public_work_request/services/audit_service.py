import logging

from sqlalchemy.exc import SQLAlchemyError

from ..models import db, AuditLog

logger = logging.getLogger(__name__)

def log_audit(action, entity, entity_id=None, details=None, admin_id=None, ip_address=None):
    """Records an audit entry. Failures are logged and never reach the caller."""
    try:
        db.session.add(AuditLog(
            action=action,
            entity=entity,
            entity_id=entity_id,
            details=details,
            admin_id=admin_id,
            ip_address=ip_address,
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to write audit log {action}: {e}")
        db.session.rollback()

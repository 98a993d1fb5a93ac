import logging

from pymongo.database import Database

from .models import utcnow

logger = logging.getLogger(__name__)


def log_event(db: Database, actor: str, action: str, details: dict = None):
    """Append a row to ``audit_log`` for a security-relevant action by ``actor``."""
    entry = {
        "timestamp": utcnow(),
        "actor": actor,
        "action": action,
        "details": details or {},
    }
    db.audit_log.insert_one(entry)
    logger.info("Audit %s by %s: %s", action, actor, entry["details"])

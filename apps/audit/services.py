import logging

from apps.audit.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(*, actor, action, entity_type, entity_id, payload=None):
    entry = AuditLog.objects.create(
        actor=actor if getattr(actor, "is_authenticated", False) else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=payload or {},
    )
    logger.info("%s %s:%s by %s", action, entity_type, entity_id, getattr(actor, "username", None) or "system")
    return entry


def history_for(entity_type, entity_id):
    return AuditLog.objects.select_related("actor").filter(entity_type=entity_type, entity_id=str(entity_id))


def serialize_entry(entry):
    return {
        "id": str(entry.id),
        "action": entry.action,
        "actor": entry.actor.username if entry.actor else None,
        "payload": entry.payload,
        "created_at": entry.created_at,
    }

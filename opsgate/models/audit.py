"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for privileged actions.
"""

import json
from datetime import datetime, timezone

from opsgate.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "user_role", "role", "workflow_template", "workflow_instance",
}

AUDIT_ACTIONS = {
    # Role membership
    "user_role.assign",
    "user_role.remove",
    "user_role.self_assign_denied",
    "user_role.self_remove",
    "user_role.fallback_assign",
    "user_role.fallback_remove",
    # Role lifecycle
    "role.delete",
    # Workflow
    "workflow_template.activate",
    "workflow_template.deactivate",
    "workflow_template.delete",
    "workflow_instance.start",
    "workflow_instance.complete",
    "workflow_instance.cancel",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action. ``diff_json`` carries the payload of the action
    (role ids, previous holders, cleared workflow nodes...).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="user_role | role | workflow_template | workflow_instance",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system-initiated entries",
    )
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Raises:
        ValueError: ``entity_type`` or ``action`` is not a known audit value.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type!r}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log

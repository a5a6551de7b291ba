from tiersync.extensions import db
from ._types import JSONType, utcnow

SUBSCRIPTION_CREATED = "subscription_created"
SUBSCRIPTION_UPDATED = "subscription_updated"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"

SYSTEM_EVENT_TYPES = (
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_CANCELLED,
    "user_role_created",
    "user_role_updated",
    "user_role_removed",
    "user_created",
    "user_updated",
    "user_deleted",
)

class SystemEvent(db.Model):
    """Append-only audit log. Rows are never updated or deleted."""

    __tablename__ = "system_events"

    id = db.Column(db.String(36), primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # Not a FK: a user id, or a literal like "stripe" / "sync"
    actor_id = db.Column(db.String(255), nullable=True)
    entity_id = db.Column(db.String(255), nullable=True)
    entity_type = db.Column(db.String(64), nullable=True)
    properties = db.Column(JSONType, nullable=False, default=dict)
    description = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SystemEvent id={self.id} type={self.event_type!r} user_id={self.user_id} actor={self.actor_id!r}>"

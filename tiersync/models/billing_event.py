from sqlalchemy import text
from tiersync.extensions import db
from ._types import JSONType, utcnow

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"
STATUSES = (STATUS_PENDING, STATUS_PROCESSED, STATUS_FAILED)

class BillingEvent(db.Model):
    __tablename__ = "billing_events"

    id = db.Column(db.String(36), primary_key=True)
    # Dedup key: one row per Stripe event, ever
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    # Not a foreign key: metadata may name a user that no longer exists
    user_id = db.Column(db.String(36), nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, index=True, default=STATUS_PENDING)
    event_data = db.Column(JSONType, nullable=False, default=dict)
    stripe_event_created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    error = db.Column(db.Text, nullable=True)
    retries = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripe_event_id": self.stripe_event_id,
            "user_id": self.user_id,
            "stripe_customer_id": self.stripe_customer_id,
            "event_type": self.event_type,
            "status": self.status,
            "error": self.error,
            "retries": self.retries,
            "stripe_event_created_at": _iso(self.stripe_event_created_at),
            "processed_at": _iso(self.processed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<BillingEvent id={self.id} stripe_event_id={self.stripe_event_id!r} status={self.status!r}>"

def _iso(value):
    return value.isoformat() if value else None

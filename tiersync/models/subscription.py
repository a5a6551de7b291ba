from tiersync.extensions import db
from ._types import utcnow

TIER_FREE = "free"
TIER_PREMIUM = "premium"
TIERS = (TIER_FREE, TIER_PREMIUM)

class Subscription(db.Model):
    """Premium rows only: a user without a row is on the free tier."""

    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True)
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    tier = db.Column(db.String(16), nullable=False, default=TIER_PREMIUM)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id} tier={self.tier!r}>"

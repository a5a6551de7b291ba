from flask_login import UserMixin
from sqlalchemy import text
from tiersync.extensions import db, login_manager
from ._types import utcnow

class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    # Join key between Stripe's customer object and the local user
    stripe_customer_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=text("true"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def get_id(self) -> str:
        return str(self.id)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} stripe_customer_id={self.stripe_customer_id!r}>"

@login_manager.user_loader
def load_user(user_id: str):
    return db.session.get(User, user_id)

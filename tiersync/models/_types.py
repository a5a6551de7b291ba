from datetime import datetime, timezone
from sqlalchemy.dialects.postgresql import JSONB
from tiersync.extensions import db

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = db.JSON().with_variant(JSONB(), "postgresql")


def utcnow():
    return datetime.now(timezone.utc)

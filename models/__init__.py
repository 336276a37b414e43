from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
db = SQLAlchemy()


def utcnow():
    # Stored naive so the ORM and the raw SQL path write identical values
    return datetime.now(timezone.utc).replace(tzinfo=None)


from .user import User
from .search_history import SearchHistory

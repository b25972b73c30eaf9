from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .collection_lock import CollectionLock  # noqa: F401
from .run_attempt import RunAttempt  # noqa: F401
from .activity_log import ActivityLogEntry, SNAPSHOT_FIELDS  # noqa: F401

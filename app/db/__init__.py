from .models import (
    Base,
    Medication,
    MedicationLog,
    PushSubscription,
)
from .session import create_db_engine
from .store import SqlStore

__all__ = [
    "Base",
    "Medication",
    "MedicationLog",
    "PushSubscription",
    "SqlStore",
    "create_db_engine",
]

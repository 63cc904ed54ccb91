from enum import Enum


class OccurrenceStatus(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class ReminderAction(str, Enum):
    TAKEN = "taken"
    SNOOZE = "snooze"

"""Status and type vocabularies stored as plain strings."""

from enum import Enum


class SecretStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReminderType(str, Enum):
    PERCENT_25 = "25_percent"
    PERCENT_50 = "50_percent"
    DAYS_7 = "7_days"
    DAYS_3 = "3_days"
    HOURS_24 = "24_hours"
    HOURS_12 = "12_hours"
    HOURS_1 = "1_hour"


class ContactMethod(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    BOTH = "both"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"

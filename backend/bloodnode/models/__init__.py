from bloodnode.models.user import User
from bloodnode.models.emergency import (
    BloodType,
    UrgencyLevel,
    AlertStatus,
    ResponseStatus,
    EmergencyAlert,
    EmergencyResponse,
)
from bloodnode.models.donor_location import DonorLocation, ContactPreference, DONOR_GEOHASH_PRECISION
from bloodnode.models.notification_log import NotificationLog, DeliveryStatus
from bloodnode.models.audit_log import AuditLog

__all__ = [
    "User",
    "BloodType",
    "UrgencyLevel",
    "AlertStatus",
    "ResponseStatus",
    "EmergencyAlert",
    "EmergencyResponse",
    "DonorLocation",
    "ContactPreference",
    "DONOR_GEOHASH_PRECISION",
    "NotificationLog",
    "DeliveryStatus",
    "AuditLog",
]

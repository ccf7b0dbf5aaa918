from crmtrail.models.audit import (
    ChangeRecordMixin,
    ContactHistory,
    DealHistory,
    LeadHistory,
    SystemEvent,
    TaskHistory,
)

__all__ = [
    "ChangeRecordMixin",
    "ContactHistory",
    "DealHistory",
    "LeadHistory",
    "SystemEvent",
    "TaskHistory",
]

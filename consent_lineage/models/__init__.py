from .consent_record import AuthoritativeConsent
from .lineage_entry import LineageLogEntry

__all__ = [
    "AuthoritativeConsent",
    "LineageLogEntry",
]

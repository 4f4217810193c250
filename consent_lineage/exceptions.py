"""
Custom Exception Classes for Consent Lineage Sync

This module defines the error kinds of the consent lineage protocol.
Every exception carries an HTTP status code and a machine-readable
error code so that the API layer can render a consistent response.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes."""

    # Timestamp & lineage errors
    INVALID_TIMESTAMP = "LINEAGE_INVALID_TIMESTAMP"
    INVALID_STATE_TRANSITION = "LINEAGE_INVALID_STATE_TRANSITION"
    SUPERSEDED = "LINEAGE_SUPERSEDED"

    # Submission errors
    MISSING_FIELD = "SUBMISSION_MISSING_FIELD"
    INVALID_FIELD = "SUBMISSION_INVALID_FIELD"
    SERVER_REJECTED = "SUBMISSION_SERVER_REJECTED"

    # Client errors
    MISSING_RECORD = "CLIENT_MISSING_RECORD"
    NETWORK_ERROR = "CLIENT_NETWORK_ERROR"
    STORAGE_ERROR = "CLIENT_STORAGE_ERROR"

    # Generic
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ConsentLineageError(Exception):
    """Base exception class for all consent lineage errors"""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Lineage & Validation Exceptions
# ============================================================================


class InvalidTimestampError(ConsentLineageError):
    """Raised when a record's timestamps violate ordering or freshness rules"""

    error_code = ErrorCode.INVALID_TIMESTAMP
    reason = "InvalidTimestamp"

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        error_details = details or {}
        if field:
            error_details["field"] = field
        self.field = field
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=error_details)


class InvalidStateTransitionError(ConsentLineageError):
    """Raised when a record is moved along an edge the state machine does not allow"""

    error_code = ErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, current_state: str, target_state: str):
        super().__init__(
            message=f"Cannot transition consent record from '{current_state}' to '{target_state}'",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"current_state": current_state, "target_state": target_state},
        )


class MissingFieldError(ConsentLineageError):
    """Raised when a sync submission lacks required fields"""

    error_code = ErrorCode.MISSING_FIELD
    reason = "MissingField"

    def __init__(self, missing: list[str], message: str = "Missing required fields."):
        self.missing = missing
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details={"missing": missing})


class InvalidFieldError(ConsentLineageError):
    """Raised when an optional sync field has the wrong type"""

    error_code = ErrorCode.INVALID_FIELD
    reason = "InvalidField"

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(
            message=f"Invalid value for: {', '.join(fields)}",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"fields": fields},
        )


class SupersededError(ConsentLineageError):
    """Raised when a submission is older than the authoritative record"""

    error_code = ErrorCode.SUPERSEDED
    reason = "Superseded"

    def __init__(self, subject_id: str, authoritative_created_at: str, submitted_created_at: str):
        super().__init__(
            message=f"Consent record for '{subject_id}' is superseded by a newer record",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "subject_id": subject_id,
                "authoritative_created_at": authoritative_created_at,
                "submitted_created_at": submitted_created_at,
            },
        )


class ConsentNotFoundError(ConsentLineageError):
    """Raised when no authoritative record exists for a subject"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, subject_id: str):
        super().__init__(
            message=f"Consent record for subject '{subject_id}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": "ConsentRecord", "subject_id": subject_id},
        )


# ============================================================================
# Client-side Exceptions
# ============================================================================


class MissingRecordError(ConsentLineageError):
    """Raised when the device store holds no record for a subject"""

    error_code = ErrorCode.MISSING_RECORD

    def __init__(self, subject_id: str):
        super().__init__(
            message=f"No stored consent record for subject '{subject_id}'",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"subject_id": subject_id},
        )


class NetworkError(ConsentLineageError):
    """Raised when transmission fails after all retry attempts"""

    error_code = ErrorCode.NETWORK_ERROR

    def __init__(self, message: str = "Sync server unreachable", attempts: int | None = None):
        details = {"attempts": attempts} if attempts is not None else {}
        self.attempts = attempts
        super().__init__(message=message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, details=details)


class StorageError(ConsentLineageError):
    """Raised when the device store cannot read or write"""

    error_code = ErrorCode.STORAGE_ERROR

    def __init__(self, message: str = "Device storage failure", key: str | None = None):
        details = {"key": key} if key else {}
        super().__init__(message=message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


class ServerRejectedError(ConsentLineageError):
    """Raised when the sync server refuses a submission"""

    error_code = ErrorCode.SERVER_REJECTED

    def __init__(self, message: str, reason: str | None = None, http_status: int | None = None):
        self.reason = reason
        self.http_status = http_status
        details: dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        if http_status is not None:
            details["http_status"] = http_status
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)

"""
Domain errors for the booking / referral case / session ledger engine.

Every error is raised inside a transaction.atomic block, so raising it
discards all mutations of the current unit of work. Views turn them into
responses with ``status_code`` and ``as_dict()``.
"""
from rest_framework import status


class SyncError(Exception):
    """Base class for errors surfaced to the caller."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'sync_error'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


class ConflictError(SyncError):
    """Requested slot overlaps an active booking of the same provider."""
    status_code = status.HTTP_409_CONFLICT
    code = 'booking_conflict'

    def __init__(self, conflicts):
        self.conflicts = conflicts
        super().__init__(
            'Requested slot overlaps an existing booking for this provider',
            conflicts=conflicts,
        )


class TransitionValidationError(SyncError):
    """Required inputs for a transition are missing or out of range."""
    code = 'validation_error'

    def __init__(self, missing_fields=None, invalid_fields=None, message=None):
        self.missing_fields = list(missing_fields or [])
        self.invalid_fields = list(invalid_fields or [])
        details = {'missing_fields': self.missing_fields}
        if self.invalid_fields:
            details['invalid_fields'] = self.invalid_fields
        if message is None:
            if self.missing_fields:
                message = f"Missing required fields: {', '.join(self.missing_fields)}"
            else:
                message = f"Invalid fields: {', '.join(self.invalid_fields)}"
        super().__init__(message, **details)


class InsufficientSessionsError(SyncError):
    """Bundle cannot cover the requested deduction."""
    status_code = status.HTTP_409_CONFLICT
    code = 'insufficient_sessions'

    def __init__(self, bundle_code, remaining, requested, reason=None):
        self.bundle_code = bundle_code
        self.remaining = remaining
        self.requested = requested
        details = {
            'bundle_code': bundle_code,
            'remaining': remaining,
            'requested': requested,
        }
        if reason:
            details['reason'] = reason
        super().__init__(
            f"Bundle {bundle_code} has {remaining} usable sessions, {requested} requested",
            **details,
        )


class InvalidTransitionError(SyncError):
    """Requested status is not reachable from the current status."""
    status_code = status.HTTP_409_CONFLICT
    code = 'invalid_transition'

    def __init__(self, entity, current_status, requested_status, message=None):
        self.entity = entity
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message or f"Cannot move {entity} from {current_status} to {requested_status}",
            entity=entity,
            current_status=current_status,
            requested_status=requested_status,
        )


class TransitionPermissionError(SyncError):
    """Actor role is not allowed to perform the requested action."""
    status_code = status.HTTP_403_FORBIDDEN
    code = 'permission_denied'

    def __init__(self, action, required_roles):
        self.action = action
        self.required_roles = sorted(required_roles)
        super().__init__(
            f"Role not allowed to {action}",
            action=action,
            required_roles=self.required_roles,
        )

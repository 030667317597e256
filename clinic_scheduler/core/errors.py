"""Error taxonomy shared by the scheduling services and the HTTP layer."""

from fastapi import status


class SchedulingError(Exception):
    """Base class for every error the booking engine raises on purpose."""

    kind = 'scheduling_error'
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'error': self.kind, 'message': self.message}


class ValidationError(SchedulingError):
    kind = 'validation_error'
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(SchedulingError):
    kind = 'not_found'
    status_code = status.HTTP_404_NOT_FOUND


class InactiveResourceError(SchedulingError):
    kind = 'inactive_resource'
    status_code = status.HTTP_409_CONFLICT


class ConflictError(SchedulingError):
    kind = 'conflict'
    status_code = status.HTTP_409_CONFLICT


class InvalidStateTransitionError(SchedulingError):
    kind = 'invalid_state_transition'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, current: str | None, target: str):
        super().__init__(f'Cannot move {entity} from {current} to {target}.')
        self.current = current
        self.target = target


class PermissionDeniedError(SchedulingError):
    kind = 'permission_denied'
    status_code = status.HTTP_403_FORBIDDEN


class ExternalServiceError(SchedulingError):
    kind = 'external_service_error'
    status_code = status.HTTP_502_BAD_GATEWAY

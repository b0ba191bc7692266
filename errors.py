class MotoLogError(Exception):
    """Base error for data-access failures that reach the caller."""

    status_code = 400
    code = 'error'

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.__class__.__doc__ or 'Request failed')
        if status_code is not None:
            self.status_code = status_code

    @property
    def message(self):
        return str(self)

    def to_dict(self):
        return {'success': False, 'error': self.message, 'code': self.code}


class NotAuthenticated(MotoLogError):
    """User not authenticated"""
    status_code = 401
    code = 'not_authenticated'


class PermissionDenied(MotoLogError):
    """You are not allowed to do that"""
    status_code = 403
    code = 'permission_denied'


class NotFound(MotoLogError):
    """Not found"""
    status_code = 404
    code = 'not_found'


class ValidationError(MotoLogError):
    """Invalid input"""
    code = 'validation'


class UploadRejected(ValidationError):
    """Upload rejected"""
    code = 'upload_rejected'


class Conflict(MotoLogError):
    status_code = 409
    code = 'conflict'


class AlreadyJoined(Conflict):
    """You are already a participant in this trip"""
    code = 'already_joined'


class TripNotOpen(Conflict):
    """Trip is not open for new participants"""
    code = 'not_open'


class TripFull(Conflict):
    """Trip is full"""
    code = 'full'


class AlreadyFollowing(Conflict):
    """Already following this user"""
    code = 'already_following'


class NotFollowing(Conflict):
    """Not following this user"""
    code = 'not_following'


class StatusConstraintError(MotoLogError):
    """Unable to join trip due to status validation. Please contact the organizer."""
    status_code = 422
    code = 'status_constraint'


class BackendError(MotoLogError):
    """The database rejected the change"""
    code = 'backend'

    def __init__(self, message=None, kind='other', status_code=None):
        super().__init__(message, status_code=status_code)
        self.kind = kind

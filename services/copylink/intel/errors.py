# services/copylink/intel/errors.py
"""Error taxonomy for the copy-link service.

Domain code raises these; the orchestrator turns them into
``{'success': False, 'error': ..., 'kind': ...}`` responses with ``status``.
"""


class CopyLinkError(Exception):
    kind = 'error'
    status = 500

    def __init__(self, message: str = ''):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {'success': False, 'error': self.message, 'kind': self.kind}


class Unauthenticated(CopyLinkError):
    kind = 'unauthenticated'
    status = 401


class Forbidden(CopyLinkError):
    kind = 'forbidden'
    status = 403


class NotFound(CopyLinkError):
    kind = 'not_found'
    status = 404


class ValidationError(CopyLinkError):
    kind = 'validation_error'
    status = 400


class InvalidState(CopyLinkError):
    kind = 'invalid_state'
    status = 400


class AlreadyUsed(InvalidState):
    kind = 'already_used'


class Expired(InvalidState):
    kind = 'expired'


class TransientLookupFailure(CopyLinkError):
    """A dependency failed during reconciliation. Absorbed as a 'missing' verdict."""
    kind = 'transient_lookup_failure'
    status = 503

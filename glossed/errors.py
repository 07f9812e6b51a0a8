"""Error kinds raised by the booking lifecycle and settlement services.

Routes translate these into JSON responses; services never return
HTTP-shaped values themselves.
"""


class BookingError(Exception):
    """Base class for all lifecycle and settlement errors."""
    
    status_code = 400
    
    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.details = details
    
    def to_dict(self):
        payload = {'error': self.message, 'kind': self.__class__.__name__}
        if self.details:
            payload['details'] = self.details
        return payload


class NotFound(BookingError):
    """Resource not found"""
    status_code = 404


class PermissionDenied(BookingError):
    """You are not allowed to perform this action"""
    status_code = 403


class InvalidTransition(BookingError):
    """Status change not permitted from the current status"""
    status_code = 409
    
    def __init__(self, entity, current, target, message=None):
        super().__init__(
            message or f'{entity} cannot move from {current} to {target}',
            entity=entity,
            current=current,
            target=target,
        )
        self.entity = entity
        self.current = current
        self.target = target


class RequestNoLongerAvailable(BookingError):
    """This request has already been taken by another professional"""
    status_code = 409


class DataIntegrityError(BookingError):
    """Stored payment data is inconsistent and needs manual reconciliation"""
    status_code = 500


class ProcessorError(BookingError):
    """The payment processor rejected or did not acknowledge the request"""
    status_code = 502
    
    # True when the processor may have applied the operation anyway
    ambiguous = False


class ProcessorDeclined(ProcessorError):
    """The payment processor declined the request"""


class AlreadyRefunded(ProcessorError):
    """The payment processor reports this charge as already refunded"""


class ProcessorTimeout(ProcessorError):
    """The payment processor did not acknowledge the request in time"""
    ambiguous = True


class SubscriptionLeak(BookingError):
    """A notification session still held subscriptions when asked to subscribe"""
    status_code = 500


class ValidationError(BookingError):
    """Invalid input"""
    status_code = 400

class PortalError(Exception):
    """Base class for errors raised by the portal"""
    pass

class ValidationError(PortalError):
    """Raised when caller-supplied input is malformed"""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field

class NotFoundError(PortalError):
    """Raised when a referenced user, device, policy or network does not exist"""
    pass

class ConflictError(PortalError):
    """Raised for administrative duplicates (policy name, user network CIDR)"""
    pass

class SourceUnavailableError(PortalError):
    """Raised when the session source cannot be reached or returns garbage"""
    pass

class MarketplaceError(Exception):
    """Base class for every failure the marketplace core reports to callers.

    ``status_code`` is the HTTP status the boundary renders and ``kind`` the
    machine-readable tag placed next to the human-readable message.
    """

    status_code = 500
    kind = "error"
    default_message = "Unexpected error"

    def __init__(self, message: str = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationError(MarketplaceError):
    status_code = 400
    kind = "validation_error"
    default_message = "Invalid input"


class AdminExempt(ValidationError):
    kind = "admin_exempt"
    default_message = "Admin accounts do not require verification"


class NotFound(MarketplaceError):
    status_code = 404
    kind = "not_found"
    default_message = "Resource not found"


class Forbidden(MarketplaceError):
    status_code = 403
    kind = "forbidden"
    default_message = "Not authorized to perform this action"


class InvalidTransition(MarketplaceError):
    status_code = 400
    kind = "invalid_transition"
    default_message = "This action is not allowed in the current state"


class PropertyUnavailable(InvalidTransition):
    kind = "property_unavailable"
    default_message = "Property is not available for booking"


class PropertyNotApproved(InvalidTransition):
    kind = "property_not_approved"
    default_message = "Property is not approved yet"


class DuplicateEmail(MarketplaceError):
    status_code = 400
    kind = "duplicate_email"
    default_message = "User with this email already exists"


class DuplicateReference(MarketplaceError):
    status_code = 409
    kind = "duplicate_reference"
    default_message = "Could not assign a unique booking reference"


class Unauthenticated(MarketplaceError):
    status_code = 401
    kind = "unauthenticated"
    default_message = "Not authorized to access this route"


class InvalidCredentials(Unauthenticated):
    kind = "invalid_credentials"
    default_message = "Invalid email or password"


class AccountDeactivated(Unauthenticated):
    kind = "account_deactivated"
    default_message = "Your account has been deactivated"


class AccountBlocked(Unauthenticated):
    kind = "account_blocked"

    def __init__(self, reason: str = None):
        self.reason = reason or "Contact admin"
        super().__init__(
            f"Your account has been blocked: {self.reason}", block_reason=self.reason
        )

"""
Error kinds raised by the auth core.

Each kind carries the HTTP status it maps to and a fixed client-facing message.
``detail`` is for logs only and is never rendered to the client.
"""


class AuthError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None, *, detail: str | None = None):
        self.message = message or type(self).message
        self.detail = detail
        super().__init__(detail or self.message)


class ValidationError(AuthError):
    status_code = 400
    message = "Invalid request"


class InvalidCredentials(AuthError):
    status_code = 401
    message = "Invalid credentials"


class Unauthenticated(AuthError):
    status_code = 401
    message = "Authentication required"


class TokenInvalid(AuthError):
    status_code = 401
    message = "Invalid token"


class InvalidFormat(TokenInvalid):
    pass


class UnsupportedAlgorithm(TokenInvalid):
    pass


class InvalidSignature(TokenInvalid):
    pass


class Expired(TokenInvalid):
    pass


class NotYetValid(TokenInvalid):
    pass


class IssuerMismatch(TokenInvalid):
    pass


class Forbidden(AuthError):
    status_code = 403
    message = "Forbidden"


class Inactive(Forbidden):
    message = "User is not active"


class NotFound(AuthError):
    status_code = 404
    message = "Not found"


class UserNotFound(NotFound):
    message = "User not found"


class TenantNotFound(NotFound):
    message = "Tenant not found"


class RoleNotFound(NotFound):
    message = "Role not found"


class Conflict(AuthError):
    status_code = 409
    message = "Resource already exists"


class InternalError(AuthError):
    pass


class IdpExchangeFailed(AuthError):
    message = "Identity provider login failed"


class IdpClaimsInvalid(AuthError):
    message = "Identity provider login failed"


class PolicyEngineError(AuthError):
    message = "Authorization check failed"


class Cancelled(AuthError):
    status_code = 408
    message = "Request cancelled"


class Timeout(AuthError):
    status_code = 408
    message = "Request timed out"

"""
Error taxonomy shared by the order components and the HTTP layer.

Each error carries the HTTP status it maps to; the application renders
all of them as a uniform ``{"message": ...}`` body.
"""


class StorefrontError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(StorefrontError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(StorefrontError):
    status_code = 401
    default_message = "Not authorized, no identity"


class Forbidden(StorefrontError):
    status_code = 403
    default_message = "Not authorized as an admin"


class NotFound(StorefrontError):
    status_code = 404
    default_message = "Order not found"


class InvalidTransition(StorefrontError):
    status_code = 409
    default_message = "Invalid order state transition"


class ConcurrentModification(StorefrontError):
    status_code = 409
    default_message = "Order was modified concurrently, retry the request"


class ExternalProcessorError(StorefrontError):
    status_code = 402
    default_message = "Payment could not be captured, please retry"


class StoreUnavailable(StorefrontError):
    status_code = 500
    default_message = "Order store is unavailable"


class CatalogUnavailable(StorefrontError):
    status_code = 503
    default_message = "Catalog service is unavailable"

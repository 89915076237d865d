"""
Error kinds raised by store operations.

Each error carries the HTTP status it maps to; the handlers registered in
main.py turn any StoreError into a {"success": false, "message": ...} envelope.
"""


class StoreError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class Forbidden(StoreError):
    status_code = 403
    default_message = "Not authorized"


class Unauthorized(StoreError):
    status_code = 401
    default_message = "Not authenticated"


class ValidationFailed(StoreError):
    status_code = 400
    default_message = "Invalid request"


class EmptyCart(StoreError):
    status_code = 400
    default_message = "Cart is empty"


class InsufficientStock(StoreError):
    status_code = 400
    default_message = "Insufficient stock"

    def __init__(self, product_name=None):
        self.product_name = product_name
        message = f"Insufficient stock for {product_name}" if product_name else None
        super().__init__(message)


class PaymentFailed(StoreError):
    status_code = 402
    default_message = "Payment failed"


class DuplicateReview(StoreError):
    status_code = 400
    default_message = "You have already reviewed this product"


class AlreadyExists(StoreError):
    status_code = 400
    default_message = "User already exists"


class DatabaseUnavailable(StoreError):
    status_code = 503
    default_message = "Database not configured"


def describe_validation_errors(errors) -> str:
    """Render the first pydantic/FastAPI validation error as a message."""
    if not errors:
        return ValidationFailed.default_message
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    msg = first.get("msg", ValidationFailed.default_message)
    return f"{'.'.join(loc)}: {msg}" if loc else msg

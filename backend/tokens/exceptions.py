"""
Typed failures raised by the service layer.

Views turn these into `{"error": ..., "code": ...}` JSON responses; the
desktop client keys its error taxonomy off `code`.
"""

from django.http import JsonResponse


class TokenError(Exception):
    status_code = 400
    code = "bad_request"
    default_message = "Bad request"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_response(self) -> JsonResponse:
        return JsonResponse({"error": self.message, "code": self.code}, status=self.status_code)


class InvalidCode(TokenError):
    status_code = 401
    code = "invalid_code"
    default_message = "Invalid Access Token."


class Deactivated(TokenError):
    status_code = 403
    code = "deactivated"
    default_message = "Token deactivated."


class Expired(TokenError):
    status_code = 403
    code = "expired"
    default_message = "Access Code Expired."


class DeviceMismatch(TokenError):
    status_code = 403
    code = "device_mismatch"
    default_message = "ACCESS DENIED: Code locked to another device."


class InvalidCredentials(TokenError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid credentials."


class Conflict(TokenError):
    status_code = 400
    code = "conflict"
    default_message = "Record already exists."


class NotFound(TokenError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class Forbidden(TokenError):
    status_code = 403
    code = "forbidden"
    default_message = "Admin authentication required."


class PaymentNotVerified(TokenError):
    code = "payment_not_verified"
    default_message = "Payment not successful"


class InvalidAmount(TokenError):
    code = "invalid_amount"
    default_message = "Invalid amount paid."


class GatewayError(TokenError):
    status_code = 500
    code = "gateway_error"
    default_message = "Server Error: Could not verify payment."


class StorageError(TokenError):
    status_code = 500
    code = "storage_error"
    default_message = "Could not save the access token."

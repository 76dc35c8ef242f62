"""
Error taxonomy for access-code logins and admin actions.

Permanent denials (`InvalidCode`, `Deactivated`, `Expired`,
`DeviceMismatch`) are never retried. `RemoteError` and its subclasses are
transient and trigger the local-cache fallback. `BindingRequired` is not
an error at all: it asks the caller to confirm an irreversible binding and
call again.
"""


class BindingRequired(Exception):
    def __init__(self, code: str = ""):
        super().__init__("This access code is not yet bound to a device. Confirm to bind it to this device.")
        self.code = code


class AccessError(Exception):
    default_message = "Access denied."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidCode(AccessError):
    default_message = "Invalid Access Code."


class Deactivated(AccessError):
    default_message = "This access code has been deactivated by an admin."


class Expired(AccessError):
    default_message = "This access code has expired. Please purchase a new one."


class DeviceMismatch(AccessError):
    default_message = "ACCESS DENIED: This access code is locked to another device. Contact an admin for a reset."


class InvalidCredentials(AccessError):
    default_message = "Invalid credentials."


class RegistrationConflict(AccessError):
    default_message = "A student with this registration number already exists."


class AdminRequired(AccessError):
    default_message = "Admin sign-in required."


class PaymentNotVerified(AccessError):
    default_message = "Payment not successful."


class InvalidAmount(AccessError):
    default_message = "Invalid amount paid."


class PaymentGatewayError(AccessError):
    default_message = "Could not verify payment."


class DeviceIdentityError(AccessError):
    default_message = "Could not verify device identity. Please restart the app and try again."


class StorageError(AccessError):
    default_message = "Could not save data on this device."


class RemoteError(AccessError):
    default_message = "The server could not be reached."


class NetworkUnavailable(RemoteError):
    default_message = "Network offline."


class RemoteTimeout(NetworkUnavailable):
    default_message = "The server took too long to respond."

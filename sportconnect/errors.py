"""Service-layer exceptions rendered as JSON errors by the app factory."""


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None, **extra):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra

    def to_dict(self):
        payload = {'error': self.message}
        payload.update(self.extra)
        return payload


class ValidationError(ServiceError):
    status_code = 400


class AuthenticationFailed(ServiceError):
    status_code = 401


class PermissionDenied(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class IntegrationUnavailable(ServiceError):
    status_code = 503


class PaymentProcessorError(ServiceError):
    status_code = 502


class PhoneVerificationRequired(PermissionDenied):
    """Raised when a bid action needs a verified phone number first."""

    def __init__(self, message='Verify your phone number to use bid challenges'):
        super().__init__(
            message,
            code='phone_verification_required',
            remediation='/api/auth/phone/send',
        )

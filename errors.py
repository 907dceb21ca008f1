from typing import Optional


class LeadRouterError(Exception):
    """Base error carrying the HTTP status and machine-readable code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(LeadRouterError):
    status_code = 400
    code = "VALIDATION_ERROR"


class DuplicateLeadError(LeadRouterError):
    """The (email, lead source) pair already has a Lead. Expected, never retried."""

    status_code = 409
    code = "DUPLICATE_LEAD"

    def __init__(self, email: str, lead_source: str):
        super().__init__(f"Lead already processed: {email} from source {lead_source}")
        self.email = email
        self.lead_source = lead_source


class RaceConditionError(LeadRouterError):
    """Version mismatch on a conditional write."""

    status_code = 409
    code = "RACE_CONDITION"


class InvalidTransitionError(LeadRouterError):
    status_code = 400
    code = "INVALID_TRANSITION"


class LeadNotFoundError(LeadRouterError):
    status_code = 404
    code = "LEAD_NOT_FOUND"


class NotLeadOwnerError(LeadRouterError):
    status_code = 403
    code = "NOT_OWNER"


class AuthenticationError(LeadRouterError):
    status_code = 401
    code = "UNAUTHORIZED"


class AuthorizationError(LeadRouterError):
    status_code = 403
    code = "FORBIDDEN"


class TransientInfrastructureError(LeadRouterError):
    """Timeout or connection failure talking to an external dependency."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} error: {message}")
        self.service = service


class CircuitOpenError(TransientInfrastructureError):
    code = "CIRCUIT_OPEN"

    def __init__(self, service: str):
        super().__init__(service, "circuit breaker is open")


class FatalConfigurationError(Exception):
    """Missing or unsafe configuration; the process must not start."""

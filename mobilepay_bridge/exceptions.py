"""
Bridge exceptions.

Every error carries an API error code and the HTTP status it maps to, so the
exception handlers in ``api.errors`` can render a uniform envelope.
"""

from typing import Any, Dict, List, Optional, Union


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    code: str = "INTERNAL_SERVER_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Union[Dict[str, Any], List[Any]]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the error part of the API envelope."""
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, details={self.details})"


# Provider (MobilePay)


class ProviderConfigError(BridgeError):
    """MobilePay credentials are missing or invalid."""

    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503


class TokenFetchFailed(BridgeError):
    """Access token could not be obtained from MobilePay."""

    code = "TOKEN_FETCH_FAILED"
    status_code = 502


class ProviderAPIError(BridgeError):
    """MobilePay answered with a non-2xx status or could not be reached."""

    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            details={"provider_status": status_code, "provider_body": body},
            original_error=original_error,
        )
        self.provider_status = status_code
        self.body = body


class AgreementCreationFailed(BridgeError):
    code = "AGREEMENT_CREATION_FAILED"
    status_code = 502


class AgreementLookupFailed(BridgeError):
    code = "AGREEMENT_LOOKUP_FAILED"
    status_code = 502


class AgreementCancellationFailed(BridgeError):
    code = "AGREEMENT_CANCELLATION_FAILED"
    status_code = 502


class ChargeCreationFailed(BridgeError):
    code = "CHARGE_CREATION_FAILED"
    status_code = 502


class ChargeLookupFailed(BridgeError):
    code = "CHARGE_LOOKUP_FAILED"
    status_code = 502


class ChargeCancellationFailed(BridgeError):
    code = "CHARGE_CANCELLATION_FAILED"
    status_code = 502


# Domain


class InvalidIntervalUnit(BridgeError):
    code = "INVALID_INTERVAL_UNIT"
    status_code = 400


class InvalidPlanType(BridgeError):
    code = "INVALID_PLAN_TYPE"
    status_code = 400


class InvalidChargeStatus(BridgeError):
    """Operation not allowed for the charge's current status."""

    code = "INVALID_STATUS"
    status_code = 400


class MissingEventField(BridgeError):
    """Webhook event lacks an id its handler needs."""

    code = "MISSING_EVENT_FIELD"
    status_code = 400


# Request level


class ValidationFailed(BridgeError):
    code = "VALIDATION_FAILED"
    status_code = 400


class NotFound(BridgeError):
    code = "NOT_FOUND"
    status_code = 404


class Unauthorized(BridgeError):
    code = "UNAUTHORIZED"
    status_code = 401


class InvalidSignature(Unauthorized):
    code = "INVALID_SIGNATURE"


class AgreementNotChargeable(BridgeError):
    """Charges can only be created against pending or active agreements."""

    code = "AGREEMENT_NOT_CHARGEABLE"
    status_code = 409

from __future__ import annotations

from datetime import datetime

from fastapi import HTTPException


class ProtocolError(Exception):
    """User-facing rejection. Anything that is not a ProtocolError is an internal failure."""

    code = "PROTOCOL_ERROR"
    status_code = 400
    default_message = "Request rejected"

    def __init__(self, message: str | None = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_detail(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        for k, v in self.extra.items():
            detail[k] = v.isoformat() if isinstance(v, datetime) else v
        return detail


class OfferNotAvailable(ProtocolError):
    code = "OFFER_NOT_AVAILABLE"
    default_message = "Offer not available"


class CooldownActive(ProtocolError):
    code = "COOLDOWN_ACTIVE"
    status_code = 403
    default_message = "Cooldown period active"

    def __init__(self, cooldown_ends_at: datetime, message: str | None = None):
        super().__init__(message, cooldown_ends_at=cooldown_ends_at)
        self.cooldown_ends_at = cooldown_ends_at


class MaxReached(ProtocolError):
    code = "MAX_REACHED"
    status_code = 403
    default_message = "Maximum redemptions reached for this offer"


class PresenceFailed(ProtocolError):
    code = "PRESENCE_FAILED"
    status_code = 403
    default_message = "Unable to verify your presence at the venue"


class FirstVisitRequired(ProtocolError):
    code = "FIRST_VISIT_REQUIRED"
    status_code = 403
    default_message = "You must have visited this venue before redeeming offers"


class TrustLevelTooLow(ProtocolError):
    code = "TRUST_LEVEL_TOO_LOW"
    status_code = 403
    default_message = "Trust level too low for this offer"


class InvalidToken(ProtocolError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenExpired(ProtocolError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class ApprovalRequired(ProtocolError):
    code = "APPROVAL_REQUIRED"
    status_code = 403
    default_message = "Staff approval required"


class NotApprovable(ProtocolError):
    code = "NOT_APPROVABLE"
    status_code = 409
    default_message = "Redemption cannot be approved"


class InsufficientPermissions(ProtocolError):
    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403
    default_message = "Insufficient permissions"


class NoActiveSession(ProtocolError):
    code = "NO_ACTIVE_SESSION"
    status_code = 403
    default_message = "No active staff session for this venue"


class AlreadyOnRoster(ProtocolError):
    code = "ALREADY_ON_ROSTER"
    status_code = 409
    default_message = "Already an active staff member"


class QRCodeConflict(ProtocolError):
    code = "QR_CODE_CONFLICT"
    status_code = 409
    default_message = "QR code already linked"


class InvalidTTL(ProtocolError):
    code = "INVALID_TTL"
    status_code = 422
    default_message = "Requested TTL outside policy"


class NotFound(ProtocolError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


def http_error(e: ProtocolError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())

"""Domain errors raised by the fulfillment core.

Each error carries a ``kind`` string so callers (and the HTTP layer) can tell
"wrong state" apart from "bad input" without parsing messages.
"""

from __future__ import annotations


class PlantError(ValueError):
    """Base class for every error the core raises on purpose."""

    kind = "plant_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


class NotFound(PlantError):
    kind = "not_found"
    status_code = 404


class ValidationFailed(PlantError):
    kind = "validation_error"
    status_code = 400


class InvalidTransition(PlantError):
    """Action attempted from the wrong status, by the wrong actor, or on stale state.

    Always recoverable by re-fetching the current record.
    """

    kind = "invalid_transition"
    status_code = 409


class ChangeProposalViolation(PlantError):
    """A director's proposal tried to touch something other than date/time."""

    kind = "change_proposal_violation"
    status_code = 422


class CaptureConflict(PlantError):
    """A gross/tare reading is already recorded or a capture is in flight."""

    kind = "capture_conflict"
    status_code = 409


class NegativeNetWeight(PlantError):
    kind = "negative_net_weight"
    status_code = 422


class DeviceUnavailable(PlantError):
    """The weighbridge bridge could not be reached or refused the command."""

    kind = "device_unavailable"
    status_code = 503


class QuotaExceeded(PlantError):
    """Raised only when strict quota enforcement is switched on."""

    kind = "quota_exceeded"
    status_code = 409


__all__ = [
    "PlantError",
    "NotFound",
    "ValidationFailed",
    "InvalidTransition",
    "ChangeProposalViolation",
    "CaptureConflict",
    "NegativeNetWeight",
    "DeviceUnavailable",
    "QuotaExceeded",
]

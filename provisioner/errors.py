from __future__ import annotations

from typing import Any


class ProvisioningError(Exception):
    """Base class for every provisioning failure surfaced to callers.

    ``code`` is a stable machine-readable classification; ``context`` carries
    the offending plan/panel identifiers so operators can act on them.
    """

    code = "provisioning_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class InvalidProvisioningRequest(ProvisioningError):
    code = "invalid_request"


class PlanNotFound(ProvisioningError):
    code = "plan_not_found"


class NoPanelAssigned(ProvisioningError):
    code = "no_panel_assigned"


class PanelInactive(ProvisioningError):
    code = "panel_inactive"


class PanelOffline(ProvisioningError):
    code = "panel_offline"


class PanelMisconfigured(ProvisioningError):
    code = "panel_misconfigured"


class UnsupportedPanelType(ProvisioningError):
    code = "unsupported_panel_type"


class ProvisioningTransportError(ProvisioningError):
    code = "transport_error"

    def __init__(self, message: str, *, provider: str, status_code: int | None = None, **context: Any) -> None:
        super().__init__(message, provider=provider, status_code=status_code, **context)
        self.provider = provider
        self.status_code = status_code


class ProvisioningIncompleteResponse(ProvisioningError):
    code = "incomplete_response"


class ServiceUnavailable(ProvisioningError):
    code = "service_unavailable"


class TrialNotEligible(ProvisioningError):
    code = "trial_not_eligible"

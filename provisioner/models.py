from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


GIB = 1024 ** 3
SECONDS_PER_DAY = 86400


class PanelType(str, Enum):
    MARZBAN = "marzban"
    MARZNESHIN = "marzneshin"


class HealthStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    ACTIVE = "active"
    EXPIRED = "expired"


class AdminDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(slots=True)
class Inbound:
    id: int
    tag: str
    protocol: str


@dataclass(slots=True)
class Panel:
    id: str
    name: str
    type: str
    base_url: str
    username: str
    password_enc: str
    active: bool
    health_status: str
    default_inbounds: list[Inbound] = field(default_factory=list)
    enabled_protocols: list[str] = field(default_factory=list)
    country: str = ""


@dataclass(slots=True)
class Plan:
    id: str
    plan_identifier: str
    name: str
    api_type: str
    assigned_panel_id: str | None
    price_per_gb: int
    default_data_limit_gb: int
    default_duration_days: int
    active: bool


@dataclass(slots=True)
class Subscription:
    id: str
    username: str
    plan_id: str | None
    data_limit_gb: int
    duration_days: int
    status: str
    admin_decision: str
    vpn_user_created: bool
    subscription_url: str | None
    expire_at: int | None
    provisioning_claimed_at: int | None
    email: str | None
    mobile: str
    notes: str | None

    @property
    def is_approved(self) -> bool:
        return (
            self.status == SubscriptionStatus.ACTIVE.value
            and self.admin_decision == AdminDecision.APPROVED.value
        )

    @property
    def is_rejected(self) -> bool:
        return self.admin_decision == AdminDecision.REJECTED.value


@dataclass(slots=True)
class TestUser:
    __test__ = False

    id: str
    username: str
    email: str
    phone_number: str
    device_fingerprint: str | None
    panel_id: str | None
    panel_name: str
    subscription_url: str | None
    data_limit_bytes: int
    expire_at: int
    status: str


@dataclass(slots=True)
class ProvisioningRequest:
    plan_id: str
    username: str
    data_limit_gb: int
    duration_days: int
    notes: str = ""
    subscription_id: str | None = None
    is_free_trial: bool = False


@dataclass(slots=True)
class ProvisioningResult:
    username: str
    subscription_url: str
    expire: int
    data_limit_bytes: int
    panel_type: str
    panel_name: str
    panel_id: str
    panel_url: str

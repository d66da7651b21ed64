"""
MobilePay Recurring API v3 wire models.

Field aliases follow the camelCase names MobilePay uses on the wire.
"""

import enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    ext_expires_in: Optional[int] = None


class AgreementInterval(BaseModel):
    unit: str
    count: int = Field(..., ge=1, le=31)


class CreateAgreementResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    agreement_id: str = Field(..., alias="agreementId")
    agreement_resource: Optional[str] = Field(None, alias="agreementResource")
    confirmation_url: Optional[str] = Field(None, alias="vippsConfirmationUrl")


class GetAgreementResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    status: str
    product_name: Optional[str] = Field(None, alias="productName")
    start: Optional[str] = None
    stop: Optional[str] = None


class CreateChargeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    charge_id: str = Field(..., alias="chargeId")
    status: str = "PENDING"


class GetChargeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    status: str
    due: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    description: Optional[str] = None


class WebhookEventType(str, enum.Enum):
    """Webhook events MobilePay pushes for recurring payments."""

    agreement_stopped = "recurring.agreement-stopped.v1"
    charge_created = "recurring.charge-created.v1"
    charge_due = "recurring.charge-due.v1"
    charge_reserved = "recurring.charge-reserved.v1"
    charge_charged = "recurring.charge-charged.v1"
    charge_failed = "recurring.charge-failed.v1"
    charge_cancelled = "recurring.charge-cancelled.v1"
    unknown = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.unknown


class WebhookEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    agreement_id: Optional[str] = Field(None, alias="agreementId")
    charge_id: Optional[str] = Field(None, alias="chargeId")
    status: Optional[str] = None
    actor: Optional[str] = None


class WebhookEvent(BaseModel):
    """Inbound webhook envelope."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    merchant_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("merchantId", "msn", "merchant_id")
    )
    timestamp: Optional[str] = None
    event: str
    data: WebhookEventData = Field(default_factory=WebhookEventData)

    @property
    def event_type(self) -> WebhookEventType:
        return WebhookEventType(self.event)

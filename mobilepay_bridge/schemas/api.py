"""Request models for the public and admin API"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from mobilepay_bridge.database.models import PlanType


class CustomerIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    phone: str = Field(
        ...,
        pattern=r"^\+45\d{8}$",
        description="Danish phone number (+45XXXXXXXX)",
    )
    name: str = Field(..., min_length=2, max_length=255)
    billing_customer_id: Optional[str] = Field(None, alias="stripeCustomerId")


class PlanIn(BaseModel):
    type: PlanType
    amount: Decimal = Field(..., gt=0, description="Amount in DKK (major units)")
    currency: Literal["DKK"] = "DKK"


class CreateAgreementRequest(BaseModel):
    customer: CustomerIn
    plan: PlanIn


class CancelAgreementRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

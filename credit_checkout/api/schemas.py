"""
Pydantic schemas for API request/response models.

Field names are snake_case in Python and camelCase on the wire.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateOrderRequest(WireModel):
    """Request schema for creating an order."""

    amount: Decimal = Field(..., description="Price in the quoted currency's major units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., USD)")
    package_id: str = Field(..., alias="packageId", description="Credit package identifier")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalise currency code."""
        return v.upper()

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [{"amount": "12.00", "currency": "USD", "packageId": "starter-pack"}]
        },
    )


class CreateOrderResponse(WireModel):
    """Response schema for order creation."""

    id: str = Field(..., description="Provider-issued order id")
    amount: int = Field(..., description="Amount in settlement minor units")
    currency: str = Field(..., description="Settlement currency")
    key_id: str = Field(..., alias="keyId", description="Gateway public key id")
    package_id: str = Field(..., alias="packageId")
    status: str = Field(..., description="Order status")
    display_amount: str = Field(
        ..., alias="displayAmount", description="Amount in settlement major units"
    )


class VerifyPaymentRequest(WireModel):
    """Completed-payment callback forwarded by the client."""

    order_id: str = Field(
        ..., validation_alias=AliasChoices("orderId", "razorpay_order_id", "order_id")
    )
    payment_reference: str = Field(
        ...,
        validation_alias=AliasChoices(
            "paymentReference", "razorpay_payment_id", "payment_reference"
        ),
    )
    signature: str = Field(
        ..., validation_alias=AliasChoices("signature", "razorpay_signature")
    )
    package_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("packageId", "package_id")
    )

    @field_validator("order_id", "payment_reference", "signature")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class VerifyPaymentResponse(WireModel):
    success: bool
    message: Optional[str] = None
    code: Optional[str] = None


class OrderStatusResponse(WireModel):
    id: str
    amount: int
    currency: str
    package_id: str = Field(..., alias="packageId")
    status: str


class CheckoutDescriptorResponse(WireModel):
    """Options for opening the provider's checkout UI."""

    key: str
    order_id: str = Field(..., alias="orderId")
    amount: int
    currency: str
    name: str
    description: str
    method: Dict[str, bool]
    prefill: Dict[str, str]


class PackageResponse(WireModel):
    id: str
    name: str
    credits: int
    price: Decimal
    currency: str


class PackagesResponse(WireModel):
    packages: List[PackageResponse]


class CreditsResponse(WireModel):
    credits: int


class ErrorResponse(WireModel):
    message: str
    code: Optional[str] = None


class WebhookResponse(WireModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., alias="eventId", description="Razorpay event id")
    message: Optional[str] = Field(default=None, description="Status message")


class HealthCheckResponse(WireModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")

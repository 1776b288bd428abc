from decimal import Decimal
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


class OrderItemPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product: Optional[Any] = None
    product_id: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("product_id", "productId")
    )
    name: Optional[str] = Field(..., max_length=500)
    color: Optional[str] = Field(default="", max_length=200)
    size: Optional[str] = Field(default="", max_length=50)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image: Optional[str] = ""

    @property
    def product_reference(self):
        return self.product or self.product_id or None


class ShippingPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str = Field(
        ..., min_length=2, max_length=200, validation_alias=AliasChoices("full_name", "fullName")
    )
    phone: str
    country: str = Field(..., min_length=2, max_length=100)
    state: Optional[str] = ""
    city: str = Field(..., min_length=2, max_length=100)
    postal_code: Optional[str] = Field(
        default="", max_length=20, validation_alias=AliasChoices("postal_code", "postalCode")
    )
    address_line1: str = Field(
        ..., min_length=3, max_length=300, validation_alias=AliasChoices("address_line1", "addressLine1")
    )
    address_line2: Optional[str] = Field(
        default="", max_length=300, validation_alias=AliasChoices("address_line2", "addressLine2")
    )
    notes: Optional[str] = Field(default="", max_length=2000)


class CreateOrderPayload(BaseModel):
    """Checkout request body; snake_case and camelCase keys are both accepted."""

    model_config = ConfigDict(extra="ignore")

    items: List[OrderItemPayload] = Field(..., min_length=1)
    total_price: float = Field(..., ge=0, validation_alias=AliasChoices("total_price", "totalPrice"))
    shipping: Optional[ShippingPayload] = None
    idempotency_key: Optional[str] = Field(
        default=None, max_length=500, validation_alias=AliasChoices("idempotency_key", "idempotencyKey")
    )
    fingerprint: Optional[str] = None

    @field_validator("total_price")
    @classmethod
    def check_total_precision(cls, value: float) -> float:
        exponent = Decimal(str(value)).normalize().as_tuple().exponent
        if isinstance(exponent, int) and exponent < -2:
            raise ValueError("must have at most 2 decimal places")
        return value


def describe_validation_error(exc: ValidationError) -> List[str]:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "Invalid value")
        details.append(f"{location}: {message}" if location else message)
    return details

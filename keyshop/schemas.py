"""
Request bodies. Field names on the wire are the storefront's camelCase;
the checkout callback also accepts the gateway's native razorpay_* names.
"""
from __future__ import annotations
from typing import List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class CreateOrderRequest(_Body):
    order_id: str = Field(alias="orderId", min_length=1, max_length=64)
    brand_id: int = Field(alias="brandId")
    plan_name: str = Field(alias="planName", min_length=1, max_length=64)
    amount: float = Field(gt=0, allow_inf_nan=False)


class PaymentIntentRequest(_Body):
    order_id: str = Field(alias="orderId", min_length=1, max_length=64)
    amount: float = Field(gt=0, allow_inf_nan=False)
    brand_name: str = Field(alias="brandName", min_length=1)
    plan_name: str = Field(alias="planName", min_length=1)


class VerifyPaymentRequest(_Body):
    gateway_order_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("gatewayOrderId", "razorpay_order_id"),
    )
    gateway_payment_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices(
            "gatewayPaymentId", "razorpay_payment_id"
        ),
    )
    signature: str = Field(
        min_length=1,
        validation_alias=AliasChoices("signature", "razorpay_signature"),
    )
    order_id: str = Field(alias="orderId", min_length=1, max_length=64)


class CancelOrderRequest(_Body):
    order_id: str = Field(alias="orderId", min_length=1, max_length=64)


class AdminLoginRequest(_Body):
    username: str
    password: str


class AddKeyRequest(_Body):
    brand_id: int = Field(alias="brandId")
    plan: str = Field(min_length=1, max_length=64)
    key_value: str = Field(alias="keyValue", min_length=1, max_length=512)


class AddKeysRequest(_Body):
    brand_id: int = Field(alias="brandId")
    plan: str = Field(min_length=1, max_length=64)
    key_values: List[str] = Field(alias="keyValues", min_length=1,
                                  max_length=10_000)


class AddBrandRequest(_Body):
    name: str = Field(min_length=1, max_length=128)
    description: Optional[str] = None


class AddPlanRequest(_Body):
    name: str = Field(min_length=1, max_length=64)
    price: float = Field(gt=0, allow_inf_nan=False)

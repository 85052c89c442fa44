from __future__ import annotations
from pydantic import BaseModel

class PaymentPublic(BaseModel):
    payment_token: str
    reference: str
    status: str
    is_successful: bool
    is_expired: bool
    amount: int
    currency: str
    votes_count: int
    candidate_name: str | None = None
    edition_name: str | None = None
    category_name: str | None = None
    payment_method: str | None = None
    transaction_id: str | None = None
    created_at: str | None = None
    expires_at: str | None = None
    paid_at: str | None = None
    check_interval_ms: int
    votes_created: bool | None = None

class CheckoutPublic(BaseModel):
    payment_token: str
    reference: str
    status: str
    checkout_url: str | None = None
    transaction_id: str | None = None
    amount: int
    currency: str
    resumed: bool = False

class PaymentResponse(BaseModel):
    success: bool = True
    data: PaymentPublic

class CheckoutResponse(BaseModel):
    success: bool = True
    data: CheckoutPublic

class WebhookAck(BaseModel):
    received: bool
    status: str | None = None

class GatewayPing(BaseModel):
    ok: bool
    environment: str

"""
Webhook acknowledgement schema.

WHY: Stripe and PayPal only look at the status code, but a body that says
whether the event type was handled makes delivery logs readable.
"""

from typing import Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    received: bool = True
    handled: Optional[bool] = Field(
        default=None,
        description="False when the event type is acknowledged but ignored",
    )

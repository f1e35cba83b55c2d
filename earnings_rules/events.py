"""Ad-network callbacks, validated into a closed set of event shapes."""

from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class _AdEventBase(BaseModel):
    user_id: str = Field(min_length=1)
    platform: str = Field(min_length=1, description="Ad network, e.g. adsterra or adgem")
    event_id: str = Field(min_length=1, description="Network-side id, unique per platform")
    placement: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return f"ad:{self.platform}:{self.event_id}"


class AdViewEvent(_AdEventBase):
    event_type: Literal["view"] = "view"
    ad_type: Optional[str] = None
    base_revenue: Decimal = Field(ge=0)


class OfferCompletionEvent(_AdEventBase):
    event_type: Literal["completion"] = "completion"
    offer_id: str
    offer_name: Optional[str] = None
    base_revenue: Decimal = Field(ge=0)


class ClickEvent(_AdEventBase):
    """Tracked for analytics upstream; never pays out."""

    event_type: Literal["click"] = "click"
    offer_id: Optional[str] = None


AdEvent = Annotated[
    Union[AdViewEvent, OfferCompletionEvent, ClickEvent],
    Field(discriminator="event_type"),
]

ad_event_adapter = TypeAdapter(AdEvent)


def parse_ad_event(payload: dict) -> Union[AdViewEvent, OfferCompletionEvent, ClickEvent]:
    """Validate a raw callback payload; raises pydantic.ValidationError."""
    return ad_event_adapter.validate_python(payload)

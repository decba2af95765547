"""
Settlement event schema.

Events on the settlement queue follow a fixed, versioned schema. All fields
are required except ``correlation_id``; unknown fields are rejected instead of
silently dropped, and a payload carrying a schema version this consumer does
not know fails validation.
"""

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 1


class EventTypes:
    RESERVATION_ACCEPTED = "reservation.accepted"


class PartitionStrategy:
    """Partition keys for the settlement topic."""

    @staticmethod
    def reservation_key(product_id: str, user_id: str) -> str:
        """Reservations partitioned by (product, user) so retries stay ordered."""
        return f"reservation:{product_id}:{user_id}"


class ReservationEvent(BaseModel):
    """A reservation accepted on the request path, awaiting settlement."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: Literal[1] = SCHEMA_VERSION
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: Literal["reservation.accepted"] = EventTypes.RESERVATION_ACCEPTED
    order_id: str
    product_id: str
    user_id: str
    reserved_token: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None

    @property
    def partition_key(self) -> str:
        return PartitionStrategy.reservation_key(self.product_id, self.user_id)

# Price Feed - Data Structures
# Records returned by the HTTP API and pushed over the WebSocket

"""
Price Feed Module

Responsibilities:
- Convert price service JSON into dataclasses
- Normalize feed ids (no 0x prefix)
- Keep the full inbound record available as `raw`
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..utils.helpers import remove_leading_0x


@dataclass(frozen=True)
class Price:
    """A price with its confidence interval, both scaled by 10^expo"""
    price: int
    conf: int
    expo: int
    publish_time: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Price":
        return cls(
            price=int(data["price"]),
            conf=int(data["conf"]),
            expo=int(data["expo"]),
            publish_time=int(data["publish_time"]),
        )

    def get_price_as_number(self) -> float:
        return self.price * (10 ** self.expo)

    def get_conf_as_number(self) -> float:
        return self.conf * (10 ** self.expo)


@dataclass(frozen=True)
class PriceFeedMetadata:
    """Optional metadata attached to verbose responses"""
    emitter_chain: Optional[int] = None
    slot: Optional[int] = None
    price_service_receive_time: Optional[int] = None
    prev_publish_time: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceFeedMetadata":
        return cls(
            emitter_chain=data.get("emitter_chain"),
            slot=data.get("slot"),
            price_service_receive_time=data.get("price_service_receive_time"),
            prev_publish_time=data.get("prev_publish_time"),
        )


@dataclass(frozen=True)
class PriceFeed:
    """Price feed record keyed by its normalized id"""
    id: str
    price: Optional[Price] = None
    ema_price: Optional[Price] = None
    metadata: Optional[PriceFeedMetadata] = None
    vaa: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceFeed":
        """
        Build a PriceFeed from a JSON object

        Raises:
            ValueError: if data is not an object or has no string id
            KeyError / TypeError: if a nested price block is incomplete
        """
        if not isinstance(data, dict):
            raise ValueError(f"Price feed must be an object, got {type(data).__name__}")

        feed_id = data.get("id")
        if not isinstance(feed_id, str) or not feed_id:
            raise ValueError("Price feed has no id")

        price = data.get("price")
        ema_price = data.get("ema_price")
        metadata = data.get("metadata")

        return cls(
            id=remove_leading_0x(feed_id),
            price=Price.from_dict(price) if isinstance(price, dict) else None,
            ema_price=Price.from_dict(ema_price) if isinstance(ema_price, dict) else None,
            metadata=PriceFeedMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
            vaa=data.get("vaa"),
            raw=dict(data),
        )

    def get_price_no_older_than(self, age: float, now: Optional[float] = None) -> Optional[Price]:
        """Return the price if it was published within `age` seconds, else None."""
        if self.price is None:
            return None
        now = time.time() if now is None else now
        if now - self.price.publish_time > age:
            return None
        return self.price

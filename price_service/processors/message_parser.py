# Message Parser - JSON Parsing
# Parser and builders for price service WebSocket messages

"""
Message Parser Module

Responsibilities:
- Parse JSON frames from WebSocket
- Classify by the `type` discriminator
- Convert price updates to PriceFeed records
- Build outbound subscribe / unsubscribe messages
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from .price_feed import PriceFeed
from ..exceptions import MessageParseError
from ..utils.logger import setup_logger


class MessageType(Enum):
    """WebSocket message types"""
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    RESPONSE = "response"
    PRICE_UPDATE = "price_update"
    UNKNOWN = "unknown"


@dataclass
class ParsedMessage:
    """Generic parsed message"""
    message_type: MessageType
    type: Any
    data: Dict[str, Any]
    timestamp: datetime
    price_feed: Optional[PriceFeed] = None

    @property
    def is_error(self) -> bool:
        return self.message_type == MessageType.RESPONSE and self.data.get("status") == "error"

    @property
    def error(self) -> str:
        return str(self.data.get("error") or "Unknown WS error")


class MessageParser:
    """
    Parser for inbound WebSocket frames

    Raises MessageParseError for anything that is not a JSON object or
    whose price_update payload is malformed; unknown types are returned
    as MessageType.UNKNOWN for the caller to decide.
    """

    def __init__(self, logger=None):
        self.logger = logger or setup_logger("MessageParser", "INFO")
        self._parse_count = 0
        self._error_count = 0

    def parse(self, raw_message: Union[str, bytes]) -> ParsedMessage:
        """
        Parse raw frame

        Args:
            raw_message: Text or UTF-8 bytes frame from WebSocket

        Returns:
            ParsedMessage
        """
        self._parse_count += 1

        try:
            text = raw_message.decode("utf-8") if isinstance(raw_message, bytes) else raw_message
            data = json.loads(text)
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            self._error_count += 1
            raise MessageParseError(f"Error parsing message as JSON: {e}", _preview(raw_message)) from e

        if not isinstance(data, dict):
            self._error_count += 1
            raise MessageParseError("Message is not a JSON object", _preview(raw_message))

        message_type = self._determine_message_type(data.get("type"))
        price_feed = None

        if message_type == MessageType.PRICE_UPDATE:
            try:
                price_feed = PriceFeed.from_dict(data["price_feed"])
            except (KeyError, TypeError, ValueError) as e:
                self._error_count += 1
                raise MessageParseError(
                    f"Error parsing price_update payload: {e!r}", _preview(raw_message)
                ) from e

        self.logger.debug(f"Parsed message #{self._parse_count}: {data.get('type')}")

        return ParsedMessage(
            message_type=message_type,
            type=data.get("type"),
            data=data,
            timestamp=datetime.now(),
            price_feed=price_feed,
        )

    def _determine_message_type(self, value: Any) -> MessageType:
        if value == MessageType.RESPONSE.value:
            return MessageType.RESPONSE
        if value == MessageType.PRICE_UPDATE.value:
            return MessageType.PRICE_UPDATE
        return MessageType.UNKNOWN

    def get_stats(self) -> dict:
        return {
            "parsed": self._parse_count,
            "errors": self._error_count,
        }


def build_subscribe_message(ids: Iterable[str], request_config=None) -> Dict[str, Any]:
    """Subscribe message; optional flags are omitted when unset."""
    message: Dict[str, Any] = {
        "type": MessageType.SUBSCRIBE.value,
        "ids": list(ids),
    }
    if request_config is not None:
        for key, value in (
            ("verbose", request_config.verbose),
            ("binary", request_config.binary),
            ("allow_out_of_order", request_config.allow_out_of_order),
        ):
            if value is not None:
                message[key] = value
    return message


def build_unsubscribe_message(ids: Iterable[str]) -> Dict[str, Any]:
    return {
        "type": MessageType.UNSUBSCRIBE.value,
        "ids": list(ids),
    }


def _preview(raw_message, limit: int = 200) -> str:
    text = raw_message if isinstance(raw_message, str) else repr(raw_message)
    return text[:limit]

"""JSON framing for the real-time channel"""
import json
from dataclasses import dataclass
from typing import Any


class ProtocolError(ValueError):
    """Raised for frames that are not valid channel JSON"""


@dataclass
class EventFrame:
    """Server push: a named event with its payload"""
    event: str
    data: Any = None


@dataclass
class AckFrame:
    """Server acknowledgement for an emitted event"""
    ack_id: int
    data: Any = None


def encode_emit(event: str, data: Any, ack_id: int) -> str:
    """Serialize an outbound event that expects an acknowledgement"""
    return json.dumps({"event": event, "data": data, "id": ack_id})


def decode_frame(raw: str | bytes) -> EventFrame | AckFrame:
    """Parse an inbound text frame into an event or an ack"""
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(frame, dict):
        raise ProtocolError("Frame must be a JSON object")

    if "ack" in frame:
        try:
            ack_id = int(frame["ack"])
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Invalid ack id: {frame['ack']!r}") from exc
        return AckFrame(ack_id=ack_id, data=frame.get("data"))

    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("Frame has neither an event name nor an ack id")
    return EventFrame(event=event, data=frame.get("data"))

"""Wire format shared by the relay and the lobby client.

Relay traffic is one JSON envelope per websocket text frame, tagged by a
``kind`` string. Direct-channel traffic (after the handshake) uses its own
small set of frames. Both sides parse-or-reject at the boundary: anything that
does not validate raises EnvelopeError and is dropped by the caller.
"""
import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_serializer


class EnvelopeError(ValueError):
    """Raised when a frame is not a valid envelope."""


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# ============ SIGNALING ENVELOPES ============

class SessionDescription(_Wire):
    # 'pranswer' is the provisional answer
    type: Literal['offer', 'answer', 'pranswer', 'rollback']
    sdp: Optional[str] = None

    @model_serializer(mode='wrap')
    def _omit_missing_sdp(self, handler):
        # a rollback carries no sdp at all
        data = handler(self)
        if data.get('sdp') is None:
            data.pop('sdp', None)
        return data


class SelfJoined(_Wire):
    kind: Literal['self-joined'] = 'self-joined'
    id: str
    peer_ids: list[str] = Field(alias='peerIds')


class PeerJoined(_Wire):
    kind: Literal['peer-joined'] = 'peer-joined'
    id: str


class PeerLeft(_Wire):
    kind: Literal['peer-left'] = 'peer-left'
    id: str


class Offer(_Wire):
    kind: Literal['offer'] = 'offer'
    to_id: str = Field(alias='toId')
    from_id: str = Field(alias='fromId')
    description: SessionDescription


class Answer(_Wire):
    kind: Literal['answer'] = 'answer'
    to_id: str = Field(alias='toId')
    from_id: str = Field(alias='fromId')
    description: SessionDescription


class RejectOffer(_Wire):
    kind: Literal['reject-offer'] = 'reject-offer'
    to_id: str = Field(alias='toId')
    from_id: str = Field(alias='fromId')


class Ping(_Wire):
    kind: Literal['ping'] = 'ping'
    to_id: str = Field(alias='toId')
    from_id: str = Field(alias='fromId')


class Pong(_Wire):
    kind: Literal['pong'] = 'pong'
    to_id: str = Field(alias='toId')
    from_id: str = Field(alias='fromId')


class AppEnvelope(BaseModel):
    """Application-defined envelope. The relay broadcasts it untouched."""
    model_config = ConfigDict(extra='allow', frozen=True)

    kind: str


RelayEnvelope = Annotated[
    Union[SelfJoined, PeerJoined, PeerLeft, Offer, Answer, RejectOffer, Ping, Pong],
    Field(discriminator='kind'),
]
SignalEnvelope = Union[SelfJoined, PeerJoined, PeerLeft, Offer, Answer, RejectOffer, Ping, Pong, AppEnvelope]

# Unicast kinds are routed on toId; roster kinds only ever originate at the relay.
UNICAST = (Offer, Answer, RejectOffer, Ping, Pong)
ROSTER = (SelfJoined, PeerJoined, PeerLeft)

_relay_adapter = TypeAdapter(RelayEnvelope)
KNOWN_KINDS = frozenset(
    model.model_fields['kind'].default for model in (*ROSTER, *UNICAST)
)


def _load_object(raw) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise EnvelopeError(f'not utf-8: {e}') from e
    try:
        obj = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise EnvelopeError(f'not json: {e}') from e
    if not isinstance(obj, dict):
        raise EnvelopeError(f'expected a json object, got {type(obj).__name__}')
    if not isinstance(obj.get('kind'), str):
        raise EnvelopeError('missing or non-string kind')
    return obj


def parse_envelope(raw) -> SignalEnvelope:
    """Parse one relay frame. Unknown kinds come back as AppEnvelope."""
    obj = _load_object(raw)
    if obj['kind'] not in KNOWN_KINDS:
        return AppEnvelope.model_validate(obj)
    try:
        return _relay_adapter.validate_python(obj)
    except ValidationError as e:
        raise EnvelopeError(f"invalid {obj['kind']} envelope: {e.error_count()} error(s)") from e


def encode(envelope) -> str:
    return envelope.model_dump_json(by_alias=True)


# ============ DIRECT CHANNEL FRAMES ============

class MessageFrame(_Wire):
    kind: Literal['message'] = 'message'
    payload: Any = None


class ReceiptRequestFrame(_Wire):
    kind: Literal['message-requesting-receipt'] = 'message-requesting-receipt'
    id: str
    payload: Any = None
    sent_at: float = Field(alias='sentAt')


class ReceiptFrame(_Wire):
    kind: Literal['message-receipt'] = 'message-receipt'
    id: str


ChannelFrame = Annotated[
    Union[MessageFrame, ReceiptRequestFrame, ReceiptFrame],
    Field(discriminator='kind'),
]
_frame_adapter = TypeAdapter(ChannelFrame)


def parse_frame(raw) -> Union[MessageFrame, ReceiptRequestFrame, ReceiptFrame]:
    obj = _load_object(raw)
    try:
        return _frame_adapter.validate_python(obj)
    except ValidationError as e:
        raise EnvelopeError(f"invalid {obj['kind']} frame: {e.error_count()} error(s)") from e


def encode_frame(frame) -> str:
    return frame.model_dump_json(by_alias=True)

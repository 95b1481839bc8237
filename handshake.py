"""Offer/answer handshake with one remote peer.

Initiator: IDLE -> LOCAL_OFFER_REQUESTED -> LOCAL_SDP_READY -> OFFER_SENT
           -> AWAITING_ANSWER -> CONNECTED
Responder: IDLE -> REMOTE_OFFER_APPLIED -> LOCAL_ANSWER_REQUESTED
           -> LOCAL_SDP_READY -> ANSWER_SENT -> CONNECTED

Any state may move to CLOSED. Envelopes that arrive in a state that does not
accept them are dropped; local calls made in the wrong state raise
IllegalTransition.
"""
import asyncio, enum, logging
from typing import Any, Awaitable, Callable, Optional

from aiortc import RTCSessionDescription

from assembler import LocalDescriptionAssembler
from delivery import DEFAULT_RECEIPT_TIMEOUT, Receipt, ReliableChannel
from protocol import Answer, Offer, RejectOffer

logger = logging.getLogger(__name__)

CHANNEL_LABEL = 'lobby'
CHANNEL_ID = 0


class HandshakeState(enum.Enum):
    IDLE = 'idle'
    LOCAL_OFFER_REQUESTED = 'local-offer-requested'
    LOCAL_SDP_READY = 'local-sdp-ready'
    OFFER_SENT = 'offer-sent'
    AWAITING_ANSWER = 'awaiting-answer'
    REMOTE_OFFER_APPLIED = 'remote-offer-applied'
    LOCAL_ANSWER_REQUESTED = 'local-answer-requested'
    ANSWER_SENT = 'answer-sent'
    CONNECTED = 'connected'
    CLOSED = 'closed'


# an offer is on the wire and the other side has not answered it yet
OFFER_OUTSTANDING = (HandshakeState.OFFER_SENT, HandshakeState.AWAITING_ANSWER)
# states in which a reject-offer from the peer ends the session
REJECTABLE = OFFER_OUTSTANDING + (
    HandshakeState.REMOTE_OFFER_APPLIED,
    HandshakeState.LOCAL_ANSWER_REQUESTED,
    HandshakeState.ANSWER_SENT,
)


class HandshakeError(RuntimeError):
    pass


class IllegalTransition(HandshakeError):
    def __init__(self, operation: str, state: HandshakeState):
        super().__init__(f'cannot {operation} while {state.value}')
        self.operation = operation
        self.state = state


class HandshakeSession:
    """Owns one peer connection and its negotiated data channel.

    send_envelope is an async callable that puts an envelope on the relay.
    """

    def __init__(self, self_id: str, peer_id: str, pc,
                 send_envelope: Callable[[Any], Awaitable[None]],
                 on_message: Callable[[str, Any], Any] = None,
                 on_connected: Callable[['HandshakeSession'], Any] = None,
                 on_closed: Callable[['HandshakeSession'], Any] = None,
                 gather_timeout: Optional[float] = None):
        self.self_id = self_id
        self.peer_id = peer_id
        self.pc = pc
        self.initiator: Optional[bool] = None
        self._send_envelope = send_envelope
        self._on_message = on_message
        self._on_connected = on_connected
        self._on_closed = on_closed
        self._state = HandshakeState.IDLE
        self._applying_offer = False
        self._channel_open = asyncio.Event()
        self._tasks: set = set()

        self.assembler = LocalDescriptionAssembler(pc, gather_timeout)
        # negotiated channel: both sides create it, no 'datachannel' event needed
        self.channel = pc.createDataChannel(CHANNEL_LABEL, negotiated=True, id=CHANNEL_ID)
        self.delivery = ReliableChannel(self.channel, on_message=self._deliver)
        self._setup_channel(self.channel)
        pc.on('connectionstatechange', self._on_connection_state)

    def __repr__(self):
        return f'<HandshakeSession {self.self_id}->{self.peer_id} {self._state.value}>'

    @property
    def state(self) -> HandshakeState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is HandshakeState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._state is HandshakeState.CLOSED

    @property
    def channel_open(self) -> bool:
        return self._channel_open.is_set()

    # ============ HOST CALLBACKS ============

    def _setup_channel(self, channel):
        @channel.on('open')
        def on_open():
            logger.debug('channel to %s open', self.peer_id)
            self._channel_open.set()

        @channel.on('message')
        def on_message(data):
            self.delivery.handle_frame(data)

        @channel.on('close')
        def on_close():
            self._channel_open.clear()

        if getattr(channel, 'readyState', None) == 'open':
            self._channel_open.set()

    def _on_connection_state(self):
        state = self.pc.connectionState
        logger.debug('peer connection to %s: %s', self.peer_id, state)
        if state == 'connected' and self._state is HandshakeState.ANSWER_SENT:
            self._enter_connected()
        elif state in ('failed', 'closed') and not self.closed:
            self._spawn(self.close())

    def _spawn(self, result):
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _deliver(self, payload):
        if self._on_message is not None:
            return self._on_message(self.peer_id, payload)

    def _enter(self, state: HandshakeState):
        logger.debug('%s -> %s: %s -> %s', self.self_id, self.peer_id, self._state.value, state.value)
        self._state = state

    def _enter_connected(self):
        self._enter(HandshakeState.CONNECTED)
        if self._on_connected is not None:
            self._spawn(self._on_connected(self))

    def _require(self, operation: str, *states: HandshakeState):
        if self._state not in states or self._applying_offer:
            raise IllegalTransition(operation, self._state)

    def _check_open(self, operation: str):
        if self.closed:
            raise HandshakeError(f'session with {self.peer_id} closed during {operation}')

    async def _put(self, envelope):
        try:
            await self._send_envelope(envelope)
        except Exception:
            await self.close()
            raise

    # ============ INITIATOR ============

    async def send_offer(self):
        self._require('send an offer', HandshakeState.IDLE)
        self.initiator = True
        self._enter(HandshakeState.LOCAL_OFFER_REQUESTED)
        try:
            description = await self.assembler.assemble('offer')
        except Exception:
            await self.close()
            raise
        self._check_open('offer')
        self._enter(HandshakeState.LOCAL_SDP_READY)
        # the answer may be read while the write is still completing
        self._enter(HandshakeState.OFFER_SENT)
        await self._put(Offer(to_id=self.peer_id, from_id=self.self_id, description=description))
        if self._state is HandshakeState.OFFER_SENT:
            self._enter(HandshakeState.AWAITING_ANSWER)

    async def receive_answer(self, envelope: Answer) -> bool:
        if self._state not in OFFER_OUTSTANDING:
            logger.debug('dropping answer from %s while %s', self.peer_id, self._state.value)
            return False
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=envelope.description.sdp or '', type=envelope.description.type))
        if self.closed:
            return False
        self._enter(HandshakeState.CONNECTED)
        return True

    async def receive_rejection(self, envelope: RejectOffer) -> bool:
        """The peer declined our offer, or withdrew the offer it made us."""
        if self._state not in REJECTABLE:
            logger.debug('dropping reject-offer from %s while %s', self.peer_id, self._state.value)
            return False
        await self.close()
        return True

    # ============ RESPONDER ============

    async def receive_offer(self, envelope: Offer) -> bool:
        if self._state is not HandshakeState.IDLE or self._applying_offer:
            logger.debug('dropping offer from %s while %s', self.peer_id, self._state.value)
            return False
        self.initiator = False
        self._applying_offer = True
        try:
            # remote description has to be in place before an answer can be created
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=envelope.description.sdp or '', type=envelope.description.type))
        finally:
            self._applying_offer = False
        if self.closed:
            return False
        self._enter(HandshakeState.REMOTE_OFFER_APPLIED)
        return True

    async def send_answer(self):
        self._require('send an answer', HandshakeState.REMOTE_OFFER_APPLIED)
        self._enter(HandshakeState.LOCAL_ANSWER_REQUESTED)
        try:
            description = await self.assembler.assemble('answer')
        except Exception:
            await self.close()
            raise
        self._check_open('answer')
        self._enter(HandshakeState.LOCAL_SDP_READY)
        self._enter(HandshakeState.ANSWER_SENT)
        await self._put(Answer(to_id=self.peer_id, from_id=self.self_id, description=description))
        if self._state is HandshakeState.ANSWER_SENT and self.pc.connectionState == 'connected':
            self._enter_connected()

    async def reject_offer(self):
        self._require('reject an offer', HandshakeState.REMOTE_OFFER_APPLIED)
        await self.hang_up()

    async def hang_up(self):
        """Close the session, telling the peer first if an offer is still undecided."""
        if self._state in REJECTABLE:
            try:
                await self._send_envelope(RejectOffer(to_id=self.peer_id, from_id=self.self_id))
            finally:
                await self.close()
        else:
            await self.close()

    # ============ DIRECT CHANNEL ============

    async def wait_channel_open(self, timeout: float = 15.0):
        """Wait until the data channel is writable. CONNECTED alone does not imply that."""
        await asyncio.wait_for(self._channel_open.wait(), timeout)

    def send(self, payload):
        if not self.channel_open:
            raise HandshakeError(f'channel to {self.peer_id} is not open')
        self.delivery.send(payload)

    async def send_with_receipt(self, payload, timeout: float = DEFAULT_RECEIPT_TIMEOUT) -> Receipt:
        if not self.channel_open:
            raise HandshakeError(f'channel to {self.peer_id} is not open')
        return await self.delivery.send_with_receipt(payload, timeout)

    async def close(self):
        if self.closed:
            return
        self._enter(HandshakeState.CLOSED)
        self._channel_open.clear()
        self.delivery.fail_all(HandshakeError(f'session with {self.peer_id} closed'))
        await self.pc.close()
        if self._on_closed is not None:
            self._spawn(self._on_closed(self))

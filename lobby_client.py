"""Headless lobby client.

Joins a room on the signaling relay, keeps track of who else is there, and
negotiates direct WebRTC data channels with individual peers.

Usage:
    client = LobbyClient('ws://localhost:3333/tictactoe/ab12cd',
                         on_offer=lambda session: ...)
    self_id = await client.connect()

    # As initiator:
    session = await client.send_offer(peer_id)
    await session.wait_channel_open()

    # As responder (usually from on_offer):
    session = await client.send_answer(peer_id)

    # Chat over the direct channel:
    client.send(peer_id, 'hello')
    receipt = await client.send_with_receipt(peer_id, 'hello?', timeout=1.0)
    msg = await client.receive()  # blocks until a message arrives
"""
import asyncio, logging, time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from delivery import DEFAULT_RECEIPT_TIMEOUT, Receipt
from handshake import HandshakeError, HandshakeSession
from protocol import (
    Answer, AppEnvelope, EnvelopeError, Offer, PeerJoined, PeerLeft, Ping, Pong, RejectOffer,
    SelfJoined, encode, parse_envelope,
)

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = [
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
    'stun:stun2.l.google.com:19302',
    'stun:stun3.l.google.com:19302',
    'stun:stun4.l.google.com:19302',
]


class NotConnected(RuntimeError):
    """The relay connection is not (or no longer) available."""


@dataclass
class Message:
    peer_id: str
    payload: Any


Hook = Optional[Callable[..., Any]]


class LobbyClient:
    def __init__(self, url: str, *,
                 on_self_joined: Hook = None,
                 on_peer_joined: Hook = None,
                 on_peer_left: Hook = None,
                 on_offer: Hook = None,
                 on_answer: Hook = None,
                 on_offer_rejected: Hook = None,
                 on_offer_withdrawn: Hook = None,
                 on_connected: Hook = None,
                 on_message: Hook = None,
                 on_envelope: Hook = None,
                 on_disconnected: Hook = None,
                 peer_connection_factory: Callable[[], Any] = None,
                 ice_servers: list[str] = None,
                 gather_timeout: Optional[float] = None):
        self.url = url
        self.self_id: Optional[str] = None
        self.peers: list[str] = []
        self.ws = None
        self.on_self_joined = on_self_joined
        self.on_peer_joined = on_peer_joined
        self.on_peer_left = on_peer_left
        self.on_offer = on_offer
        self.on_answer = on_answer
        self.on_offer_rejected = on_offer_rejected
        self.on_offer_withdrawn = on_offer_withdrawn
        self.on_connected = on_connected
        self.on_message = on_message
        self.on_envelope = on_envelope
        self.on_disconnected = on_disconnected
        self.ice_servers = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
        self.gather_timeout = gather_timeout
        self._pc_factory = peer_connection_factory or self._create_pc
        self._sessions: dict[str, HandshakeSession] = {}
        self._pongs: dict[str, asyncio.Future] = {}
        self._msg_queue: asyncio.Queue = asyncio.Queue()
        self._joined = asyncio.Event()
        self._lost = False
        self._reader: Optional[asyncio.Task] = None
        self._tasks: set = set()

    def _create_pc(self):
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=self.ice_servers)] if self.ice_servers else [])
        return RTCPeerConnection(config)

    # ============ RELAY CONNECTION ============

    async def connect(self, timeout: float = 10.0) -> str:
        """Open the relay connection and wait until the relay has told us who we are."""
        self.ws = await connect(self.url)
        self._reader = asyncio.create_task(self._read_loop())
        try:
            await asyncio.wait_for(self._joined.wait(), timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise
        return self.self_id

    @property
    def connected(self) -> bool:
        return self._joined.is_set() and not self._lost

    async def _send(self, envelope):
        if self.ws is None or self._lost:
            raise NotConnected('not connected to the relay')
        try:
            await self.ws.send(encode(envelope))
        except ConnectionClosed as e:
            raise NotConnected('relay connection closed') from e

    async def _read_loop(self):
        try:
            async for raw in self.ws:
                try:
                    envelope = parse_envelope(raw)
                except EnvelopeError as e:
                    logger.warning('dropping malformed envelope from relay: %s', e)
                    continue
                logger.debug('received %s', envelope.kind)
                try:
                    await self._dispatch(envelope)
                except Exception:
                    logger.exception('error handling %s envelope', envelope.kind)
        except ConnectionClosed:
            pass
        finally:
            await self._relay_lost()

    async def _relay_lost(self):
        if self._lost:
            return
        self._lost = True
        logger.info('relay connection closed')
        for session in list(self._sessions.values()):
            # handshakes in flight can no longer complete
            if not session.connected:
                await session.close()
        for fut in self._pongs.values():
            if not fut.done():
                fut.set_exception(NotConnected('relay connection closed'))
        self._fire(self.on_disconnected)

    def _fire(self, hook, *args):
        if hook is None:
            return
        result = hook(*args)
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._hook_done)

    def _hook_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error('hook failed', exc_info=task.exception())

    async def _dispatch(self, envelope):
        if isinstance(envelope, SelfJoined):
            self.self_id = envelope.id
            self.peers = list(envelope.peer_ids)
            self._joined.set()
            self._fire(self.on_self_joined, envelope.id, list(envelope.peer_ids))
        elif isinstance(envelope, PeerJoined):
            if envelope.id != self.self_id and envelope.id not in self.peers:
                self.peers.append(envelope.id)
                self._fire(self.on_peer_joined, envelope.id)
        elif isinstance(envelope, PeerLeft):
            if envelope.id in self.peers:
                self.peers.remove(envelope.id)
            session = self._sessions.pop(envelope.id, None)
            if session is not None:
                await session.close()
            self._fire(self.on_peer_left, envelope.id)
        elif isinstance(envelope, Offer):
            if envelope.to_id != self.self_id:
                return
            session = self._sessions.get(envelope.from_id)
            if session is None or session.closed:
                session = self._new_session(envelope.from_id)
            if await session.receive_offer(envelope):
                self._fire(self.on_offer, session)
        elif isinstance(envelope, Answer):
            session = self._tracked(envelope.from_id, envelope.to_id)
            if session is not None and await session.receive_answer(envelope):
                self._fire(self.on_answer, session)
        elif isinstance(envelope, RejectOffer):
            session = self._tracked(envelope.from_id, envelope.to_id)
            if session is not None and await session.receive_rejection(envelope):
                if session.initiator:
                    self._fire(self.on_offer_rejected, envelope.from_id)
                else:
                    self._fire(self.on_offer_withdrawn, envelope.from_id)
        elif isinstance(envelope, Ping):
            await self._send(Pong(to_id=envelope.from_id, from_id=self.self_id))
        elif isinstance(envelope, Pong):
            fut = self._pongs.get(envelope.from_id)
            if fut is not None and not fut.done():
                fut.set_result(None)
        elif isinstance(envelope, AppEnvelope):
            self._fire(self.on_envelope, envelope)
        else:
            raise AssertionError(f'unhandled envelope {envelope!r}')

    def _tracked(self, peer_id: str, to_id: str) -> Optional[HandshakeSession]:
        if to_id != self.self_id:
            return None
        session = self._sessions.get(peer_id)
        if session is None:
            logger.debug('ignoring envelope from untracked peer %s', peer_id)
        return session

    # ============ SESSIONS ============

    def _new_session(self, peer_id: str) -> HandshakeSession:
        session = HandshakeSession(
            self.self_id, peer_id, self._pc_factory(), self._send,
            on_message=self._handle_message,
            on_connected=self._session_connected,
            on_closed=self._session_closed,
            gather_timeout=self.gather_timeout,
        )
        self._sessions[peer_id] = session
        return session

    def _session_connected(self, session: HandshakeSession):
        self._fire(self.on_connected, session)

    def _session_closed(self, session: HandshakeSession):
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]

    def _handle_message(self, peer_id: str, payload):
        self._msg_queue.put_nowait(Message(peer_id=peer_id, payload=payload))
        self._fire(self.on_message, peer_id, payload)

    def session(self, peer_id: str) -> Optional[HandshakeSession]:
        return self._sessions.get(peer_id)

    async def send_offer(self, peer_id: str) -> HandshakeSession:
        """Start a handshake with peer_id. Raises IllegalTransition if one is already under way."""
        if not self.connected:
            raise NotConnected('not connected to the relay')
        if peer_id not in self.peers:
            raise HandshakeError(f'{peer_id} is not in this room')
        session = self._sessions.get(peer_id)
        if session is None or session.closed:
            session = self._new_session(peer_id)
        await session.send_offer()
        return session

    def _pending_offer(self, peer_id: str) -> HandshakeSession:
        session = self._sessions.get(peer_id)
        if session is None:
            raise HandshakeError(f'no offer from {peer_id}')
        return session

    async def send_answer(self, peer_id: str) -> HandshakeSession:
        session = self._pending_offer(peer_id)
        await session.send_answer()
        return session

    async def reject_offer(self, peer_id: str):
        await self._pending_offer(peer_id).reject_offer()

    async def hang_up(self, peer_id: str):
        """Close the session with peer_id. An offer still undecided either way is withdrawn or declined."""
        session = self._sessions.get(peer_id)
        if session is not None:
            await session.hang_up()

    # ============ MESSAGING ============

    def _open_session(self, peer_id: str) -> HandshakeSession:
        session = self._sessions.get(peer_id)
        if session is None:
            raise HandshakeError(f'no session with {peer_id}')
        return session

    def send(self, peer_id: str, payload):
        """Fire-and-forget message over the direct channel."""
        self._open_session(peer_id).send(payload)

    async def send_with_receipt(self, peer_id: str, payload,
                                timeout: float = DEFAULT_RECEIPT_TIMEOUT) -> Receipt:
        return await self._open_session(peer_id).send_with_receipt(payload, timeout)

    async def receive(self, timeout: float = None) -> Message:
        """Receive next message. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._msg_queue.get(), timeout)
        return await self._msg_queue.get()

    def has_messages(self) -> bool:
        return not self._msg_queue.empty()

    async def broadcast(self, kind: str, **fields):
        """Send an application-defined envelope to everyone in the room (ourselves included)."""
        await self._send(AppEnvelope(kind=kind, **fields))

    async def measure_relay_latency(self, peer_id: str, timeout: float = 1.0) -> float:
        """Round trip of a ping to peer_id through the relay, in seconds."""
        if not self.connected:
            raise NotConnected('not connected to the relay')
        if peer_id in self._pongs:
            raise HandshakeError(f'ping to {peer_id} already in flight')
        fut = asyncio.get_running_loop().create_future()
        self._pongs[peer_id] = fut
        start = time.perf_counter()
        try:
            await self._send(Ping(to_id=peer_id, from_id=self.self_id))
            await asyncio.wait_for(fut, timeout)
        finally:
            self._pongs.pop(peer_id, None)
        return time.perf_counter() - start

    async def close(self):
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()
        if self.ws is not None:
            await self.ws.close()
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        for task in list(self._tasks):
            task.cancel()

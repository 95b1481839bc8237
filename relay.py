#!/usr/bin/env python3
"""WebSocket signaling relay for lobby rooms.

Clients connect to ws://host:port/<room path>. The relay tells each newcomer
who is already there, announces joins and leaves to the room, forwards
offer/answer/ping traffic to exactly one addressed peer, and broadcasts any
other envelope kind to the room verbatim. GET /healthz answers without
upgrading.
"""
import argparse, asyncio, hashlib, itertools, logging, os
from http import HTTPStatus

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from protocol import (
    ROSTER, UNICAST, EnvelopeError, PeerJoined, PeerLeft, SelfJoined, encode, parse_envelope,
)
from registry import ConnectionRegistry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3333
OUTBOX_SIZE = 64
HEALTH_PATH = '/healthz'

_connection_counter = itertools.count()


def room_from_path(path: str) -> str:
    """The room id is the request path without its query string."""
    return path.split('?', 1)[0] or '/'


def client_identity(ws) -> str:
    """Per-connection id from the handshake key, peer address and a process-wide counter."""
    key = ws.request.headers.get('Sec-WebSocket-Key', '') if ws.request else ''
    addr = ws.remote_address or ('', 0)
    material = f'{key}|{addr[0]}:{addr[1]}|{next(_connection_counter)}'
    return hashlib.blake2s(material.encode(), digest_size=8).hexdigest()


class Outbox:
    """Bounded outbound queue with its own writer task.

    put() never blocks: when the queue is full the oldest pending frame is
    dropped, so one slow peer cannot hold up delivery to the rest of the room.
    """

    def __init__(self, ws, client_id: str, size: int = OUTBOX_SIZE):
        self.ws = ws
        self.client_id = client_id
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=size)
        self._writer = asyncio.create_task(self._drain())

    def put(self, frame: str):
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning('outbox for %s full, dropped oldest frame', self.client_id)
        self._queue.put_nowait(frame)

    async def _drain(self):
        while True:
            frame = await self._queue.get()
            try:
                await self.ws.send(frame)
            except ConnectionClosed:
                return

    async def close(self):
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass


class SignalingRelay:
    def __init__(self, registry: ConnectionRegistry = None, outbox_size: int = OUTBOX_SIZE):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.outbox_size = outbox_size

    def process_request(self, connection, request):
        if request.path == HEALTH_PATH:
            return connection.respond(HTTPStatus.OK, 'ok\n')
        return None

    async def handle(self, ws):
        """Handle one WebSocket connection."""
        room = room_from_path(ws.request.path)
        client_id = client_identity(ws)
        outbox = Outbox(ws, client_id, self.outbox_size)

        # Join room: the snapshot is taken before the newcomer is added
        peers = self.registry.join(room, client_id, outbox)
        logger.info('%s joined room %s (%d already present)', client_id, room, len(peers))
        outbox.put(encode(SelfJoined(id=client_id, peer_ids=peers)))
        self.broadcast(room, encode(PeerJoined(id=client_id)), exclude=client_id)

        try:
            async for raw in ws:
                self.on_envelope(client_id, room, raw)
        except ConnectionClosed:
            pass
        finally:
            # Leave room
            self.registry.leave(client_id)
            logger.info('%s left room %s', client_id, room)
            self.broadcast(room, encode(PeerLeft(id=client_id)))
            await outbox.close()

    def on_envelope(self, client_id: str, room: str, raw):
        if not isinstance(raw, str):
            logger.warning('dropping binary frame from %s', client_id)
            return
        try:
            envelope = parse_envelope(raw)
        except EnvelopeError as e:
            logger.warning('dropping malformed envelope from %s: %s', client_id, e)
            return

        if isinstance(envelope, UNICAST):
            if envelope.from_id != client_id:
                logger.warning('dropping %s from %s claiming fromId %s',
                               envelope.kind, client_id, envelope.from_id)
                return
            target = self.registry.lookup(envelope.to_id)
            if target is None:
                logger.debug('no connection for %s, dropping %s', envelope.to_id, envelope.kind)
                return
            target.put(raw)
        elif isinstance(envelope, ROSTER):
            logger.warning('dropping relay-only %s sent by %s', envelope.kind, client_id)
        else:
            logger.debug('broadcasting %s from %s to room %s', envelope.kind, client_id, room)
            self.broadcast(room, raw)

    def broadcast(self, room: str, frame: str, exclude: str = None):
        for outbox in self.registry.handles(room, exclude=exclude):
            outbox.put(frame)

    def serve(self, host: str = '0.0.0.0', port: int = DEFAULT_PORT):
        return serve(self.handle, host, port, process_request=self.process_request)


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description='Lobby signaling relay')
    p.add_argument('--host', default=os.environ.get('HOST', '0.0.0.0'))
    p.add_argument('--port', type=int, default=int(os.environ.get('PORT', DEFAULT_PORT)))
    p.add_argument('--log-level', default=os.environ.get('LOG_LEVEL', 'INFO'))
    return p.parse_args(argv)


async def run(host: str, port: int):
    relay = SignalingRelay()
    async with relay.serve(host, port):
        logger.info('signaling relay on ws://%s:%d', host, port)
        await asyncio.Future()  # run forever


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(run(args.host, args.port))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()

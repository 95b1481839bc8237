"""Shared fixtures: a relay on an ephemeral port and an in-memory stand-in for
aiortc's RTCPeerConnection / RTCDataChannel."""
import asyncio, json, uuid

import pytest
from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter
from websockets.asyncio.client import connect

from relay import SignalingRelay

# token -> FakePeerConnection, so an answer can find the pc that made the offer
_network: dict = {}


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label='lobby', negotiated=False, id=None):
        super().__init__()
        self.label = label
        self.negotiated = negotiated
        self.id = id
        self.readyState = 'connecting'
        self.peer = None
        self.sent = []

    def send(self, data):
        if self.readyState != 'open':
            raise RuntimeError(f'channel is {self.readyState}')
        self.sent.append(data)
        peer = self.peer
        if peer is not None:
            asyncio.get_running_loop().call_soon(peer.receive, data)

    def receive(self, data):
        if self.readyState == 'open':
            self.emit('message', data)

    def open(self):
        self.readyState = 'open'
        self.emit('open')

    def close(self):
        if self.readyState != 'closed':
            self.readyState = 'closed'
            self.emit('close')


def channel_pair():
    a, b = FakeDataChannel(), FakeDataChannel()
    a.peer, b.peer = b, a
    a.open()
    b.open()
    return a, b


class FakePeerConnection(AsyncIOEventEmitter):
    """Just enough of RTCPeerConnection for the handshake.

    Gathering completes gather_delay seconds after setLocalDescription (never,
    if gather_delay is None) and appends candidates to the local sdp. Applying
    an answer connects both sides and opens their channels on the next loop
    iteration.
    """

    def __init__(self, gather_delay=0.01):
        super().__init__()
        self.token = uuid.uuid4().hex
        self.gather_delay = gather_delay
        self.iceGatheringState = 'new'
        self.connectionState = 'new'
        self.localDescription = None
        self.remoteDescription = None
        self.remote = None
        self.channels = []
        self.created = {'offer': 0, 'answer': 0}
        _network[self.token] = self

    def createDataChannel(self, label, negotiated=False, id=None, **kwargs):
        channel = FakeDataChannel(label, negotiated, id)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        self.created['offer'] += 1
        return RTCSessionDescription(sdp=f'fake-offer {self.token}', type='offer')

    async def createAnswer(self):
        if self.remoteDescription is None or self.remoteDescription.type != 'offer':
            raise RuntimeError('createAnswer needs a remote offer')
        self.created['answer'] += 1
        return RTCSessionDescription(sdp=f'fake-answer {self.token}', type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.iceGatheringState = 'gathering'
        self.emit('icegatheringstatechange')
        if self.gather_delay is not None:
            asyncio.get_running_loop().call_later(self.gather_delay, self._gathered)

    def _gathered(self):
        local = self.localDescription
        self.localDescription = RTCSessionDescription(sdp=local.sdp + ' candidates', type=local.type)
        self.iceGatheringState = 'complete'
        self.emit('icegatheringstatechange')

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.remote = _network.get(description.sdp.split()[1])
        if description.type == 'answer' and self.remote is not None:
            asyncio.get_running_loop().call_soon(self._connect)

    def _connect(self):
        remote = self.remote
        for mine, theirs in zip(self.channels, remote.channels):
            mine.peer, theirs.peer = theirs, mine
        for pc in (self, remote):
            pc.connectionState = 'connected'
            pc.emit('connectionstatechange')
        for channel in self.channels + remote.channels:
            channel.open()

    async def close(self):
        if self.connectionState == 'closed':
            return
        self.connectionState = 'closed'
        for channel in self.channels:
            if channel.peer is not None:
                channel.peer.close()
            channel.close()
        _network.pop(self.token, None)
        self.emit('connectionstatechange')


@pytest.fixture(autouse=True)
def fake_network():
    yield _network
    _network.clear()


@pytest.fixture
def pc_factory():
    return FakePeerConnection


@pytest.fixture
async def relay():
    relay = SignalingRelay()
    async with relay.serve('127.0.0.1', 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        relay.url = f'ws://127.0.0.1:{port}'
        relay.http_url = f'http://127.0.0.1:{port}'
        yield relay


async def recv_json(ws, timeout=1.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def assert_silent(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


async def join(url, room='/r1'):
    """Raw websocket join; returns (ws, self-joined envelope)."""
    ws = await connect(url + room)
    return ws, await recv_json(ws)

import asyncio

import pytest

from conftest import FakePeerConnection
from handshake import HandshakeError, HandshakeSession, HandshakeState, IllegalTransition
from protocol import Answer, Offer, RejectOffer


class Outbound:
    """Collects envelopes a session puts on the relay."""

    def __init__(self):
        self.envelopes = []

    async def __call__(self, envelope):
        self.envelopes.append(envelope)

    def last(self):
        return self.envelopes[-1]


def pair():
    a_out, b_out = Outbound(), Outbound()
    a = HandshakeSession('A', 'B', FakePeerConnection(), a_out)
    b = HandshakeSession('B', 'A', FakePeerConnection(), b_out)
    return a, a_out, b, b_out


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


async def test_full_offer_answer_exchange():
    a, a_out, b, b_out = pair()
    received = []
    b._on_message = lambda peer, payload: received.append((peer, payload))

    await a.send_offer()
    assert a.state is HandshakeState.AWAITING_ANSWER
    offer = a_out.last()
    assert isinstance(offer, Offer)
    assert (offer.to_id, offer.from_id) == ('B', 'A')
    assert offer.description.sdp.endswith('candidates')

    assert await b.receive_offer(offer)
    assert b.state is HandshakeState.REMOTE_OFFER_APPLIED
    assert b.pc.remoteDescription.type == 'offer'

    await b.send_answer()
    assert b.state is HandshakeState.ANSWER_SENT
    answer = b_out.last()
    assert isinstance(answer, Answer)
    assert (answer.to_id, answer.from_id) == ('A', 'B')

    assert await a.receive_answer(answer)
    assert a.state is HandshakeState.CONNECTED
    # logically connected is not the same as writable
    assert not a.channel_open
    with pytest.raises(HandshakeError):
        a.send('too early')

    await a.wait_channel_open(timeout=1)
    await b.wait_channel_open(timeout=1)
    assert b.state is HandshakeState.CONNECTED

    receipt = await a.send_with_receipt('hi', timeout=1)
    assert receipt.round_trip_time >= 0
    assert received == [('A', 'hi')]


async def test_second_offer_is_refused_while_first_is_in_flight():
    a, a_out, _, _ = pair()
    first = asyncio.ensure_future(a.send_offer())
    await asyncio.sleep(0)
    assert a.state is HandshakeState.LOCAL_OFFER_REQUESTED
    with pytest.raises(IllegalTransition):
        await a.send_offer()
    await first
    with pytest.raises(IllegalTransition):
        await a.send_offer()
    assert len(a_out.envelopes) == 1


async def test_out_of_order_envelopes_are_dropped():
    a, a_out, b, b_out = pair()
    answer = Answer(to_id='A', from_id='B', description={'type': 'answer', 'sdp': 'x'})
    assert not await a.receive_answer(answer)
    assert a.state is HandshakeState.IDLE

    with pytest.raises(IllegalTransition):
        await b.send_answer()

    await a.send_offer()
    offer = a_out.last()
    assert await b.receive_offer(offer)
    assert not await b.receive_offer(offer)
    assert b.state is HandshakeState.REMOTE_OFFER_APPLIED

    # an initiator already waiting for an answer ignores a crossing offer
    assert not await a.receive_offer(Offer(to_id='A', from_id='B', description=offer.description))
    assert a.state is HandshakeState.AWAITING_ANSWER


async def test_rejecting_an_offer_closes_both_sides():
    a, a_out, b, b_out = pair()
    closed = []
    a._on_closed = closed.append

    await a.send_offer()
    await b.receive_offer(a_out.last())
    await b.reject_offer()
    rejection = b_out.last()
    assert isinstance(rejection, RejectOffer)
    assert b.closed

    assert await a.receive_rejection(rejection)
    assert a.closed
    assert a.pc.connectionState == 'closed'
    assert closed == [a]


async def test_transport_failure_tears_down_session():
    a, a_out, b, b_out = pair()
    await a.send_offer()
    await b.receive_offer(a_out.last())
    await b.send_answer()
    await a.receive_answer(b_out.last())
    await settle()

    b.pc.connectionState = 'failed'
    b.pc.emit('connectionstatechange')
    await settle()
    assert b.closed
    assert not b.channel_open


async def test_close_during_assembly_aborts_offer():
    a, a_out, _, _ = pair()
    a.pc.gather_delay = 0.05
    offering = asyncio.ensure_future(a.send_offer())
    await asyncio.sleep(0.01)
    await a.close()
    with pytest.raises(HandshakeError):
        await offering
    assert a_out.envelopes == []


class Gated(Outbound):
    """Holds every write open until released."""

    def __init__(self):
        super().__init__()
        self.written = asyncio.Event()
        self.released = asyncio.Event()

    async def __call__(self, envelope):
        self.envelopes.append(envelope)
        self.written.set()
        await self.released.wait()


async def test_answer_can_arrive_before_the_offer_write_returns():
    a_out, b_out = Gated(), Outbound()
    a = HandshakeSession('A', 'B', FakePeerConnection(), a_out)
    b = HandshakeSession('B', 'A', FakePeerConnection(), b_out)

    offering = asyncio.ensure_future(a.send_offer())
    await asyncio.wait_for(a_out.written.wait(), 1)
    assert a.state is HandshakeState.OFFER_SENT

    await b.receive_offer(a_out.last())
    await b.send_answer()
    assert await a.receive_answer(b_out.last())
    assert a.state is HandshakeState.CONNECTED

    a_out.released.set()
    await offering
    assert a.state is HandshakeState.CONNECTED


async def test_closing_fails_receipts_still_outstanding():
    a, a_out, b, b_out = pair()
    await a.send_offer()
    await b.receive_offer(a_out.last())
    await b.send_answer()
    await a.receive_answer(b_out.last())
    await a.wait_channel_open(timeout=1)
    a.channel.peer = None  # nothing will come back

    waiting = asyncio.ensure_future(a.send_with_receipt('still there?', timeout=1))
    await asyncio.sleep(0)
    assert a.delivery.pending == 1
    await a.close()
    with pytest.raises(HandshakeError):
        await waiting
    assert a.delivery.pending == 0


async def test_hang_up_withdraws_an_outstanding_offer():
    a, a_out, b, b_out = pair()
    await a.send_offer()
    await b.receive_offer(a_out.last())

    await a.hang_up()
    withdrawal = a_out.last()
    assert isinstance(withdrawal, RejectOffer)
    assert (withdrawal.to_id, withdrawal.from_id) == ('B', 'A')
    assert a.closed

    assert await b.receive_rejection(withdrawal)
    assert b.closed
    assert b_out.envelopes == []


async def test_hang_up_after_connecting_only_closes():
    a, a_out, b, b_out = pair()
    await a.send_offer()
    await b.receive_offer(a_out.last())
    await b.send_answer()
    await a.receive_answer(b_out.last())

    await a.hang_up()
    assert a.closed
    assert len(a_out.envelopes) == 1


async def test_rejection_during_the_offer_write_closes_without_raising():
    a_out = Gated()
    a = HandshakeSession('A', 'B', FakePeerConnection(), a_out)
    offering = asyncio.ensure_future(a.send_offer())
    await asyncio.wait_for(a_out.written.wait(), 1)

    assert await a.receive_rejection(RejectOffer(to_id='A', from_id='B'))
    a_out.released.set()
    await offering
    assert a.closed

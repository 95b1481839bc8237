#!/usr/bin/env python3
"""Headless lobby peer.

Modes:
  1. Two in-process peers find each other through a local relay (demo/test):
     python3 lobby_bot.py --demo

  2. Join a room and accept every offer, echoing messages back:
     python3 lobby_bot.py --echo --url ws://localhost:3333/shared

  3. Join a room, call the first peer seen, then send stdin lines with receipts:
     python3 lobby_bot.py --call --url ws://localhost:3333/shared

  4. Check the relay's health endpoint:
     python3 lobby_bot.py --health --url ws://localhost:3333
"""
import argparse, asyncio, logging, sys
from urllib.parse import urlsplit

import requests

from delivery import ReceiptTimeout
from handshake import HandshakeError
from lobby_client import LobbyClient
from relay import SignalingRelay

logger = logging.getLogger('lobby_bot')

DEFAULT_URL = 'ws://localhost:3333/shared'


def health_url(ws_url: str) -> str:
    parts = urlsplit(ws_url)
    scheme = 'https' if parts.scheme == 'wss' else 'http'
    return f'{scheme}://{parts.netloc}/healthz'


def check_health(ws_url: str, timeout: float = 5.0) -> bool:
    r = requests.get(health_url(ws_url), timeout=timeout)
    return r.status_code == 200 and r.text.strip() == 'ok'


async def demo():
    """Two headless peers meet in a room on an in-process relay and exchange receipts."""
    relay = SignalingRelay()
    async with relay.serve('127.0.0.1', 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        url = f'ws://127.0.0.1:{port}/demo'
        print(f'[demo] relay on {url}')

        async def accept(session):
            print(f'[demo] bob accepting offer from {session.peer_id}')
            await bob.send_answer(session.peer_id)

        joined = asyncio.Event()
        alice = LobbyClient(url, ice_servers=[], on_peer_joined=lambda peer_id: joined.set())
        bob = LobbyClient(url, ice_servers=[], on_offer=accept)
        try:
            await alice.connect()
            await bob.connect()
            await asyncio.wait_for(joined.wait(), 5)
            print(f'[demo] alice={alice.self_id} bob={bob.self_id}')

            rtt = await alice.measure_relay_latency(bob.self_id)
            print(f'[demo] relay round trip {rtt * 1000:.1f} ms')

            session = await alice.send_offer(bob.self_id)
            await session.wait_channel_open(timeout=15)
            print('[demo] Connected!\n')

            for text in ('hey bob', 'your move', 'gg'):
                receipt = await alice.send_with_receipt(bob.self_id, text)
                msg = await bob.receive(timeout=5)
                print(f'  alice -> bob: {msg.payload}  (receipt in {receipt.round_trip_time * 1000:.1f} ms)')
        finally:
            await alice.close()
            await bob.close()
    print('\n[demo] Done.')


async def echo_mode(url):
    """Accept every offer and echo each message back to its sender."""
    client = None

    async def accept(session):
        print(f'[echo] accepting offer from {session.peer_id}')
        await client.send_answer(session.peer_id)

    def echo(peer_id, payload):
        print(f'[{peer_id}] {payload}')
        session = client.session(peer_id)
        if session is not None and session.channel_open:
            session.send(payload)

    client = LobbyClient(url, on_offer=accept, on_message=echo,
                         on_peer_joined=lambda p: print(f'[echo] {p} joined'),
                         on_peer_left=lambda p: print(f'[echo] {p} left'))
    self_id = await client.connect()
    print(f'[echo] joined as {self_id}, {len(client.peers)} peer(s) present')
    done = asyncio.Event()
    client.on_disconnected = done.set
    try:
        await done.wait()
    finally:
        await client.close()


async def call_mode(url, timeout):
    """Offer to the first peer seen, then send stdin lines with receipts."""
    arrived: asyncio.Queue = asyncio.Queue()
    client = LobbyClient(url, on_peer_joined=arrived.put_nowait,
                         on_message=lambda peer_id, payload: print(f'[{peer_id}] {payload}'),
                         on_offer_rejected=lambda p: print(f'[call] {p} rejected the offer'))
    self_id = await client.connect()
    print(f'[call] joined as {self_id}')
    try:
        peer_id = client.peers[0] if client.peers else None
        if peer_id is None:
            print('[call] waiting for a peer...')
            peer_id = await arrived.get()
        session = await client.send_offer(peer_id)
        print(f'[call] offer sent to {peer_id}, waiting for the channel...')
        await session.wait_channel_open(timeout=60)
        print('[call] Connected! Type messages, Ctrl+D to quit.\n')

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            try:
                receipt = await client.send_with_receipt(peer_id, line.rstrip('\n'), timeout)
                print(f'  (delivered in {receipt.round_trip_time * 1000:.1f} ms)')
            except ReceiptTimeout:
                print('  (no receipt)')
            except HandshakeError as e:
                print(f'[call] {e}')
                break
    finally:
        await client.close()


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--demo', action='store_true', help='Two in-process peers demo')
    p.add_argument('--echo', action='store_true', help='Accept offers and echo messages')
    p.add_argument('--call', action='store_true', help='Call the first peer in the room')
    p.add_argument('--health', action='store_true', help='Check the relay health endpoint')
    p.add_argument('--url', default=DEFAULT_URL)
    p.add_argument('--receipt-timeout', type=float, default=1.0)
    p.add_argument('-v', '--verbose', action='store_true')
    args = p.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        if args.demo:
            asyncio.run(demo())
        elif args.echo:
            asyncio.run(echo_mode(args.url))
        elif args.call:
            asyncio.run(call_mode(args.url, args.receipt_timeout))
        elif args.health:
            ok = check_health(args.url)
            print('ok' if ok else 'unhealthy')
            sys.exit(0 if ok else 1)
        else:
            print('Usage: lobby_bot.py --demo | --echo | --call | --health [--url URL]')
            print('  --demo:   Two in-process peers (tests everything)')
            print('  --echo:   Accept offers, echo messages')
            print('  --call:   Call the first peer in the room')
            print('  --health: Check the relay')
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()

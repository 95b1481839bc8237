"""Message delivery over an open direct data channel, with optional receipts."""
import asyncio, logging, time, uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from protocol import (
    EnvelopeError, MessageFrame, ReceiptFrame, ReceiptRequestFrame, encode_frame, parse_frame,
)

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT = 1.0


class ReceiptTimeout(TimeoutError):
    """No receipt arrived for a message before its timeout."""

    def __init__(self, message_id: str, timeout: float):
        super().__init__(f'no receipt for {message_id} within {timeout}s')
        self.message_id = message_id
        self.timeout = timeout


@dataclass
class Receipt:
    id: str
    round_trip_time: float  # seconds


@dataclass
class PendingReceipt:
    id: str
    created_at: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class ReliableChannel:
    """Wraps a data channel (aiortc RTCDataChannel or anything with send()).

    Inbound frames are fed through handle_frame(); a request for a receipt is
    acknowledged before the payload reaches on_message.
    """

    def __init__(self, channel, on_message: Callable[[Any], Any] = None, clock=time.perf_counter):
        self.channel = channel
        self.on_message = on_message
        self.clock = clock
        self._pending: dict[str, PendingReceipt] = {}
        self._tasks: set = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def send(self, payload):
        self.channel.send(encode_frame(MessageFrame(payload=payload)))

    async def send_with_receipt(self, payload, timeout: float = DEFAULT_RECEIPT_TIMEOUT) -> Receipt:
        loop = asyncio.get_running_loop()
        message_id = str(uuid.uuid4())
        pending = PendingReceipt(id=message_id, created_at=self.clock(), future=loop.create_future())
        self._pending[message_id] = pending
        pending.timer = loop.call_later(timeout, self._expire, message_id, timeout)
        try:
            self.channel.send(encode_frame(ReceiptRequestFrame(
                id=message_id, payload=payload, sent_at=time.time() * 1000,
            )))
            return await pending.future
        finally:
            # covers send errors and caller cancellation; a no-op once settled
            self._settle(message_id)

    def _settle(self, message_id: str) -> Optional[PendingReceipt]:
        pending = self._pending.pop(message_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, message_id: str, timeout: float):
        pending = self._settle(message_id)
        if pending is not None and not pending.future.done():
            pending.future.set_exception(ReceiptTimeout(message_id, timeout))

    def _acknowledge(self, message_id: str):
        pending = self._settle(message_id)
        if pending is None:
            logger.debug('discarding unmatched receipt %s', message_id)
            return
        if not pending.future.done():
            pending.future.set_result(Receipt(id=message_id, round_trip_time=self.clock() - pending.created_at))

    def handle_frame(self, raw):
        try:
            frame = parse_frame(raw)
        except EnvelopeError as e:
            logger.warning('dropping malformed channel frame: %s', e)
            return

        if isinstance(frame, ReceiptFrame):
            self._acknowledge(frame.id)
        elif isinstance(frame, ReceiptRequestFrame):
            self.channel.send(encode_frame(ReceiptFrame(id=frame.id)))
            self._deliver(frame.payload)
        elif isinstance(frame, MessageFrame):
            self._deliver(frame.payload)
        else:
            raise AssertionError(f'unhandled frame {frame!r}')

    def _deliver(self, payload):
        if self.on_message is None:
            return
        result = self.on_message(payload)
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def fail_all(self, error: Exception):
        """Stop tracking every outstanding receipt; waiting callers get error."""
        for message_id in list(self._pending):
            pending = self._settle(message_id)
            if pending is not None and not pending.future.done():
                pending.future.set_exception(error)

"""Local description assembly.

Candidates are not trickled: the local description is only handed out once
ICE gathering reports 'complete', so each handshake step is exactly one
envelope carrying the full SDP.
"""
import asyncio, logging
from typing import Optional

from protocol import SessionDescription

logger = logging.getLogger(__name__)


class LocalDescriptionAssembler:
    def __init__(self, pc, gather_timeout: Optional[float] = None):
        self.pc = pc
        self.gather_timeout = gather_timeout
        self._results: dict[str, asyncio.Future] = {}

    async def assemble(self, kind: str) -> SessionDescription:
        """Create an offer or answer, set it locally and wait for gathering to finish.

        Repeated or concurrent calls for the same kind share one result.
        """
        if kind not in ('offer', 'answer'):
            raise ValueError(f'cannot assemble a {kind!r} description')
        fut = self._results.get(kind)
        if fut is None:
            fut = asyncio.ensure_future(self._assemble(kind))
            self._results[kind] = fut
        try:
            return await asyncio.shield(fut)
        except Exception:
            # a failed attempt is not cached
            if self._results.get(kind) is fut and fut.done():
                del self._results[kind]
            raise

    async def _assemble(self, kind: str) -> SessionDescription:
        gathered = asyncio.get_running_loop().create_future()

        def check():
            if self.pc.iceGatheringState == 'complete' and not gathered.done():
                gathered.set_result(None)

        self.pc.on('icegatheringstatechange', check)
        try:
            if kind == 'offer':
                description = await self.pc.createOffer()
            else:
                description = await self.pc.createAnswer()
            await self.pc.setLocalDescription(description)
            check()
            try:
                await asyncio.wait_for(gathered, self.gather_timeout)
            except asyncio.TimeoutError:
                logger.warning('ICE gathering still %s after %ss, using candidates so far',
                               self.pc.iceGatheringState, self.gather_timeout)
        finally:
            self.pc.remove_listener('icegatheringstatechange', check)

        local = self.pc.localDescription
        logger.debug('local %s ready (%d bytes of sdp)', local.type, len(local.sdp or ''))
        return SessionDescription(type=local.type, sdp=local.sdp)

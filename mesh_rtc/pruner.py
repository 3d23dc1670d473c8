"""Periodic eviction of peers that stopped showing activity."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from mesh_rtc.registry import PeerRegistry

logger = logging.getLogger(__name__)


class Pruner:
    """Sweeps the registry every ``timeout`` seconds and evicts stale peers.

    A peer is stale when ``now - last_activity >= timeout``. Eviction goes
    through ``evict`` (the engine's ``close_peer``) so it shares the teardown
    path with transport failures. This is the only way peers that vanish
    without a close notification (abrupt network loss) are reclaimed.
    """

    def __init__(
        self,
        registry: PeerRegistry,
        timeout: float,
        evict: Callable[[str], Awaitable[bool]],
    ):
        if timeout <= 0:
            raise ValueError("Pruner timeout must be positive")
        self.registry = registry
        self.timeout = timeout
        self.evict = evict
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the recurring sweep. Restarts it if already running."""
        self.stop()
        self._task = asyncio.create_task(self._prune_loop())
        logger.info(f"Pruner started (timeout: {self.timeout}s)")

    def stop(self) -> None:
        """Cancel the recurring sweep."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("Pruner stopped")
        self._task = None

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Evict every stale peer.

        Args:
            now: Clock reading to compare against. Defaults to the
                registry's clock.

        Returns:
            Identifiers that were evicted by this sweep.
        """
        evicted = []
        for peer_id in self.registry.stale(self.timeout, now=now):
            logger.info(f"Peer {peer_id} timed out")
            if await self.evict(peer_id):
                evicted.append(peer_id)
        return evicted

    async def _prune_loop(self):
        while True:
            try:
                await asyncio.sleep(self.timeout)
                await self.sweep()
            except asyncio.CancelledError:
                logger.debug("Prune loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in prune sweep: {e}")

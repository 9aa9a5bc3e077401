from __future__ import annotations
import asyncio

from agent.errors import KeepaliveError
from agent.writer import OutboundWriter
from common.log import get_logger

logger = get_logger(__name__)

# Beats the common 5 minute idle timeout of load balancers in front of the coordinator
DEFAULT_KEEPALIVE_INTERVAL = 4 * 60.0
DEFAULT_PROBE_TIMEOUT = 10.0


class KeepaliveMonitor:
    """
    Periodic liveness probe for one session.

    Every ``interval`` seconds a ping goes out through the session's writer;
    the ping write and its pong together must finish within ``probe_timeout``.
    A failed probe ends ``run()`` with KeepaliveError, which the session
    treats as a dead connection.
    """

    def __init__(
        self,
        writer: OutboundWriter,
        *,
        interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        payload: bytes = b"ping",
    ) -> None:
        self.writer = writer
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.payload = payload
        self.probes_sent = 0

    async def probe(self) -> None:
        pong_waiter = await self.writer.ping(self.payload)
        await pong_waiter

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await asyncio.wait_for(self.probe(), self.probe_timeout)
            except asyncio.TimeoutError:
                logger.warning("Ping not acknowledged within %.1fs", self.probe_timeout)
                raise KeepaliveError(f"ping timed out after {self.probe_timeout}s")
            except Exception as e:
                logger.warning("Ping failed: %s", e)
                raise KeepaliveError(f"ping failed: {e}") from e
            self.probes_sent += 1
            logger.debug("Ping sent to keep connection alive")

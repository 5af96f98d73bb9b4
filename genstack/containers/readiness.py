"""
HTTP readiness polling for apps started inside runner containers.

Any HTTP response, including 4xx and 5xx, means the server is accepting
connections. Only connection-level failures count as "not ready yet".
"""

import asyncio
from typing import Optional

import httpx

from genstack.utils.config import ReadinessConfig
from genstack.utils.errors import ReadinessTimeout
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


class HttpReadinessPoller:
    """HEAD-request poller against a loopback port."""

    def __init__(
        self,
        config: Optional[ReadinessConfig] = None,
        host: str = "localhost",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ReadinessConfig()
        self.host = host
        self._transport = transport

    async def wait_until_ready(
        self,
        port: int,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """
        Poll until the server answers.

        Args:
            port: Host port to probe
            cancel_event: Set externally to abandon polling

        Returns:
            True once any response arrives, False if cancelled

        Raises:
            ReadinessTimeout: every attempt failed
        """
        url = f"http://{self.host}:{port}"
        attempts = self.config.max_attempts

        async with httpx.AsyncClient(
            timeout=self.config.request_timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(1, attempts + 1):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Readiness check cancelled", extra={"port": port})
                    return False

                try:
                    response = await client.head(url)
                    logger.info(
                        "HTTP server is ready",
                        extra={"port": port, "attempt": attempt, "status_code": response.status_code},
                    )
                    return True
                except httpx.HTTPError as e:
                    if attempt == 1 or attempt == attempts:
                        logger.debug(
                            f"HTTP readiness attempt {attempt}/{attempts} failed: {e}",
                            extra={"port": port},
                        )

                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Readiness check cancelled", extra={"port": port})
                    return False

                if attempt < attempts:
                    await self._sleep(self.config.delay, cancel_event)

        logger.warning(
            "HTTP server not ready after all attempts",
            extra={"port": port, "attempts": attempts},
        )
        raise ReadinessTimeout(port, attempts)

    @staticmethod
    async def _sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
        """Sleep, waking early if the cancel event fires."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

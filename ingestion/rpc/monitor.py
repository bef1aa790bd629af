"""
ingestion/rpc/monitor.py

Pool Health Monitor — периодическая перепроверка demoted эндпоинтов.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .pool import EndpointPool

logger = logging.getLogger(__name__)


class PoolHealthMonitor:
    """
    Фоновая задача, возвращающая восстановившиеся эндпоинты в ротацию.

    Features:
    - asyncio task, no threads (pool state lives on the event loop)
    - Readmission via EndpointPool.readmit_demoted()
    - Check errors are logged, the loop keeps running
    """

    DEFAULT_INTERVAL_SEC = 30  # Интервал между проверками

    def __init__(self, pool: EndpointPool, interval_sec: float = DEFAULT_INTERVAL_SEC):
        """
        Initialize PoolHealthMonitor.

        Args:
            pool: Pool whose demoted endpoints are re-probed
            interval_sec: Interval between checks (seconds)
        """
        self._pool = pool
        self._interval_sec = interval_sec

        self._task: Optional[asyncio.Task] = None
        self._running = False

        # Metrics
        self._checks = 0
        self._readmitted = 0
        self._errors = 0
        self._last_check: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start background monitoring on the running loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.ensure_future(self._loop())
        logger.info(f"[health_monitor] Background monitoring started (every {self._interval_sec}s)")

    async def stop(self) -> None:
        """Stop background monitoring."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[health_monitor] Background monitoring stopped")

    async def check_once(self) -> int:
        """
        Один проход: re-probe всех не допущенных эндпоинтов.

        Returns:
            Number of endpoints readmitted
        """
        self._checks += 1
        self._last_check = datetime.now(timezone.utc)
        readmitted = await self._pool.readmit_demoted()
        self._readmitted += len(readmitted)
        return len(readmitted)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._errors += 1
                logger.error(f"[health_monitor] Readmission check failed: {e}")

            # Wait for next interval
            await asyncio.sleep(self._interval_sec)

    def get_metrics(self) -> Dict[str, Any]:
        """Get monitoring metrics."""
        return {
            "checks": self._checks,
            "readmitted": self._readmitted,
            "errors": self._errors,
            "running": self._running,
            "last_check": self._last_check.isoformat() if self._last_check else None,
        }

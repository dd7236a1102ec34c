"""Statistics aggregation across proxy backends."""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Sequence

from .backend import Backend

logger = logging.getLogger(__name__)


class StatsAggregator:
    """Collects ``server/stats`` from every backend concurrently."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def aggregate(self, backends: Sequence[Backend]) -> Dict[str, Any]:
        """Per-backend stats, summed totals and the ids that failed to answer."""
        if not backends:
            logger.warning("No backends to aggregate stats from")
            return {"backends": {}, "totals": {}, "failed": []}

        tasks = [
            asyncio.create_task(
                backend.call("server/stats", timeout=self.timeout),
                name=f"get_stats_{backend.backend_id}",
            )
            for backend in backends
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        per_backend: Dict[str, Any] = {}
        failed = []
        totals: Counter = Counter()
        for backend, result in zip(backends, results):
            if isinstance(result, Exception):
                # Log error but continue with other backends
                logger.warning(f"Failed to get stats from {backend.backend_id}: {result}")
                failed.append(backend.backend_id)
                per_backend[backend.backend_id] = {"error": str(result)}
                continue

            per_backend[backend.backend_id] = result
            for namespace, count in (result.get("registry") or {}).items():
                totals[namespace] += count
            dispatcher = result.get("dispatcher") or {}
            totals["requests"] += dispatcher.get("requests", 0)
            totals["errors"] += dispatcher.get("errors", 0)
            executions = result.get("executions") or {}
            totals["executions"] += executions.get("started", 0)

        logger.debug(f"Aggregated stats from {len(backends) - len(failed)}/{len(backends)} backends")
        return {"backends": per_backend, "totals": dict(totals), "failed": failed}

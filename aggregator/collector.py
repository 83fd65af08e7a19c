# aggregator/collector.py

"""Concurrent quote fan-out.

One task per eligible venue, each independently time-boxed. The call returns
when every task has resolved or the overall deadline elapses, whichever comes
first. Tasks still running at the deadline are cancelled and their results
discarded. Venue failures never escape this module; an empty quote set means
"no liquidity".
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from aggregator import config
from aggregator.dex.base import VenueAdapter
from aggregator.dex.registry import AdapterRegistry
from aggregator.errors import ConfigError, VenueError, VenueUnavailable
from aggregator.types import Pair, Quote, Venue
from aggregator.venues import VenueSnapshot
from infra.metrics import METRICS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionResult:
    quotes: Tuple[Quote, ...]
    failures: Dict[str, str] = field(default_factory=dict)
    deadline_exceeded: bool = False
    elapsed_s: float = 0.0
    request_id: Optional[str] = None
    venues_attempted: int = 0

    @property
    def empty(self) -> bool:
        return not self.quotes


class QuoteCollector:
    def __init__(self, registry: AdapterRegistry, *, max_concurrency: Optional[int] = None):
        self.registry = registry
        if max_concurrency is None:
            max_concurrency = int(getattr(config, "MAX_CONCURRENCY", 16))
        self.max_concurrency = max(1, int(max_concurrency))

    async def _quote_one(
        self,
        adapter: VenueAdapter,
        pair: Pair,
        amount_in: int,
        max_hops: int,
        *,
        per_venue_timeout: float,
        request_id: str,
        sem: asyncio.Semaphore,
    ) -> Quote:
        async with sem:
            t0 = time.perf_counter()
            try:
                return await asyncio.wait_for(
                    adapter.get_quote(
                        pair,
                        amount_in,
                        max_hops,
                        request_id=request_id,
                        timeout_s=per_venue_timeout,
                    ),
                    timeout=per_venue_timeout,
                )
            except asyncio.TimeoutError:
                raise VenueUnavailable(adapter.name, f"timeout({per_venue_timeout}s)")
            finally:
                METRICS.observe(f"venue_latency_ms:{adapter.name}", (time.perf_counter() - t0) * 1000.0)

    def _adapters(self, venues: Iterable[Venue], failures: Dict[str, str]) -> List[VenueAdapter]:
        adapters: List[VenueAdapter] = []
        for venue in venues:
            try:
                adapters.append(self.registry.get(venue))
            except ConfigError as e:
                # misconfigured venue: excluded from this request, never priced by a substitute formula
                logger.error("venue %s misconfigured: %s", venue.name, e)
                failures[venue.name] = "config_error"
        return adapters

    async def collect_quotes(
        self,
        pair: Pair,
        amount_in: int,
        snapshot: VenueSnapshot,
        *,
        per_venue_timeout: Optional[float] = None,
        overall_deadline: Optional[float] = None,
        max_hops: int = 1,
        excluded: Iterable[str] = (),
        request_id: Optional[str] = None,
    ) -> CollectionResult:
        if per_venue_timeout is None:
            per_venue_timeout = float(getattr(config, "PER_VENUE_TIMEOUT_S", 2.0))
        if overall_deadline is None:
            overall_deadline = float(getattr(config, "OVERALL_DEADLINE_S", 5.0))
        request_id = request_id or uuid.uuid4().hex
        t0 = time.perf_counter()

        failures: Dict[str, str] = {}
        adapters = self._adapters(snapshot.eligible(excluded), failures)
        if not adapters:
            METRICS.inc("collect_no_venues", 1)
            return CollectionResult(quotes=(), failures=failures, request_id=request_id)

        sem = asyncio.Semaphore(self.max_concurrency)
        tasks: Dict[asyncio.Task, str] = {}
        for adapter in adapters:
            task = asyncio.create_task(
                self._quote_one(
                    adapter,
                    pair,
                    int(amount_in),
                    int(max_hops),
                    per_venue_timeout=float(per_venue_timeout),
                    request_id=request_id,
                    sem=sem,
                )
            )
            tasks[task] = adapter.name

        done, pending = await asyncio.wait(tasks.keys(), timeout=float(overall_deadline))

        deadline_exceeded = bool(pending)
        for task in pending:
            task.cancel()
            failures[tasks[task]] = "deadline_exceeded"
        if pending:
            # let cancellations settle; their results are discarded
            await asyncio.gather(*pending, return_exceptions=True)

        quotes: List[Quote] = []
        for task in done:
            name = tasks[task]
            err = task.exception()
            if err is None:
                quotes.append(task.result())
                METRICS.inc("quote_ok", 1)
                continue
            if isinstance(err, VenueError):
                failures[name] = err.reason
                logger.info("venue %s excluded: %s", name, err)
            else:
                failures[name] = "internal_error"
                logger.warning("venue %s failed unexpectedly: %r", name, err)
            METRICS.inc_reason("quote_fail_by_reason", failures[name], 1)

        for name, reason in failures.items():
            if reason == "deadline_exceeded":
                METRICS.inc_reason("quote_fail_by_reason", reason, 1)

        elapsed = time.perf_counter() - t0
        METRICS.observe("collect_latency_ms", elapsed * 1000.0)
        quotes.sort(key=lambda q: q.venue)
        logger.debug(
            "collected %d/%d quotes in %.1fms (deadline_exceeded=%s)",
            len(quotes),
            len(adapters),
            elapsed * 1000.0,
            deadline_exceeded,
        )
        return CollectionResult(
            quotes=tuple(quotes),
            failures=failures,
            deadline_exceeded=deadline_exceeded,
            elapsed_s=elapsed,
            request_id=request_id,
            venues_attempted=len(adapters),
        )

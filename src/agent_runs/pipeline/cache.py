"""Content-hash result cache with single-flight claims.

A lookup either claims the key (this run calls the model and later publishes or
releases), finds a published result (cache hit), or gives up waiting on another
run's claim and bypasses the cache. Cache storage errors never fail a run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from agent_runs.pipeline.models import AgentRunOutcome, CachedResultView
from agent_runs.pipeline.repository import (
    CACHE_STATE_READY,
    AgentRunRepository,
    CacheKey,
)
from agent_runs.storage.common import utc_now

logger = logging.getLogger(__name__)

PUBLISHABLE_OUTCOMES = frozenset(
    {AgentRunOutcome.SUCCESS_APPLIED, AgentRunOutcome.SUCCESS_NO_CHANGE},
)


class CacheLookupStatus(str, Enum):
    """How a cache lookup resolved."""

    CLAIMED = "claimed"
    HIT = "hit"
    BYPASS = "bypass"


@dataclass(slots=True)
class CacheLookup:
    """Lookup result; ``entry`` is the claimed or published row."""

    status: CacheLookupStatus
    key: CacheKey
    entry: CachedResultView | None = None

    @property
    def hit(self) -> bool:
        return self.status == CacheLookupStatus.HIT

    @property
    def claimed(self) -> bool:
        return self.status == CacheLookupStatus.CLAIMED


class ResultCache:
    """Claim-or-find over the agent_result_cache table."""

    def __init__(  # noqa: PLR0913
        self,
        repository: AgentRunRepository,
        *,
        claim_wait_seconds: float = 30.0,
        claim_ttl_seconds: float = 900.0,
        poll_interval_seconds: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.claim_wait_seconds = claim_wait_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    def claim_or_find(
        self,
        key: CacheKey,
        *,
        owner_run_id: str,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> CacheLookup:
        """Claim the key or return a published entry; waits boundedly on foreign claims."""

        is_canceled = cancel_requested or (lambda: False)
        wait_until = self._clock() + self.claim_wait_seconds
        while True:
            try:
                claim = self.repository.claim_cache_entry(
                    key=key,
                    owner_run_id=owner_run_id,
                    stale_before=utc_now() - timedelta(seconds=self.claim_ttl_seconds),
                )
            except SQLAlchemyError:
                logger.exception("Result cache lookup failed; bypassing cache")
                return CacheLookup(status=CacheLookupStatus.BYPASS, key=key)

            if claim.claimed:
                return CacheLookup(status=CacheLookupStatus.CLAIMED, key=key, entry=claim.entry)

            if claim.entry.state == CACHE_STATE_READY:
                self._record_hit(claim.entry)
                return CacheLookup(status=CacheLookupStatus.HIT, key=key, entry=claim.entry)

            if is_canceled() or self._clock() >= wait_until:
                logger.info(
                    "Result cache key held by run %s; bypassing cache for run %s",
                    claim.entry.owner_run_id,
                    owner_run_id,
                )
                return CacheLookup(status=CacheLookupStatus.BYPASS, key=key, entry=claim.entry)
            self._sleep(self.poll_interval_seconds)

    def complete(  # noqa: PLR0913
        self,
        lookup: CacheLookup,
        *,
        owner_run_id: str,
        outcome: AgentRunOutcome,
        output: Any,
        raw_output: str | None,
        confidence: float | None,
        tokens_used: int | None,
    ) -> bool:
        """Publish a successful result for a claimed key, or release the claim."""

        if not lookup.claimed or lookup.entry is None:
            return False
        if outcome not in PUBLISHABLE_OUTCOMES:
            self.release(lookup, owner_run_id=owner_run_id)
            return False
        try:
            published = self.repository.publish_cache_entry(
                entry_id=lookup.entry.id,
                owner_run_id=owner_run_id,
                output=output,
                raw_output=raw_output,
                confidence=confidence,
                tokens_used=tokens_used,
            )
        except SQLAlchemyError:
            logger.exception("Failed to publish result cache entry %s", lookup.entry.id)
            return False
        if not published:
            logger.info("Result cache entry %s already published or reclaimed", lookup.entry.id)
        return published

    def release(self, lookup: CacheLookup, *, owner_run_id: str) -> None:
        """Drop this run's pending claim."""

        if not lookup.claimed or lookup.entry is None:
            return
        try:
            self.repository.release_cache_claim(
                entry_id=lookup.entry.id,
                owner_run_id=owner_run_id,
            )
        except SQLAlchemyError:
            logger.exception("Failed to release result cache claim %s", lookup.entry.id)

    def _record_hit(self, entry: CachedResultView) -> None:
        try:
            self.repository.record_cache_hit(entry_id=entry.id)
        except SQLAlchemyError:
            logger.exception("Failed to record hit on result cache entry %s", entry.id)

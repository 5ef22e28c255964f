"""Round-based campaign scheduler.

Every round fires one probe per endpoint concurrently and waits for all
of them (``asyncio.gather``) before the next round starts, so transient
network conditions hit all endpoints' samples for a round alike.

Public API:
    RoundScheduler  -- prepare handles, run N rounds, aggregate
    run_campaign    -- one-call convenience wrapper
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from cdnlat.models import CampaignResult, CampaignSettings, Endpoint, EndpointResult, RequestSample
from cdnlat.probe import measure_request
from cdnlat.stats import summarize
from cdnlat.transport import TransportBuildError, TransportHandle, build_transport

logger = logging.getLogger(__name__)

# Signature: (round_number, total_rounds, samples_of_this_round)
ProgressCallback = Callable[[int, int, list[tuple[Endpoint, RequestSample]]], None]

TransportFactory = Callable[[Endpoint, str, float], TransportHandle]
Probe = Callable[..., Awaitable[RequestSample]]


class RoundScheduler:
    """Runs one measurement campaign over all configured endpoints.

    Parameters
    ----------
    settings:
        Validated campaign settings.
    log:
        Logger receiving per-round and per-probe progress lines.
    transport_factory:
        Builds a :class:`TransportHandle` for an endpoint.
    probe:
        Coroutine issuing one request; defaults to :func:`measure_request`.
    progress:
        Optional callable invoked after each round completes.
    """

    def __init__(
        self,
        settings: CampaignSettings,
        *,
        log: logging.Logger = logger,
        transport_factory: TransportFactory = build_transport,
        probe: Probe = measure_request,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.settings = settings
        self.log = log
        self._transport_factory = transport_factory
        self._probe = probe
        self.progress = progress
        self.handles: list[TransportHandle] = []
        self.skipped: dict[str, str] = {}
        self._prepared = False

    def prepare(self) -> list[TransportHandle]:
        """Build one handle per endpoint, excluding endpoints that fail."""
        self.handles = []
        self.skipped = {}
        for endpoint in self.settings.endpoints:
            try:
                handle = self._transport_factory(endpoint, self.settings.host, self.settings.timeout)
            except TransportBuildError as exc:
                self.log.error("Skipping %s: %s", endpoint.label, exc)
                self.skipped[endpoint.label] = str(exc)
                continue
            self.handles.append(handle)
        self._prepared = True
        return self.handles

    async def _run_round(self, round_number: int) -> list[RequestSample]:
        total = self.settings.rounds
        self.log.info(
            "Round %d/%d (%d concurrent requests)", round_number, total, len(self.handles),
        )
        return list(
            await asyncio.gather(
                *(
                    self._probe(
                        handle,
                        self.settings.url,
                        self.settings.host,
                        round_number,
                        timeout=self.settings.timeout,
                        log=self.log,
                    )
                    for handle in self.handles
                )
            )
        )

    async def run(self) -> CampaignResult:
        """Run all rounds and return the aggregated :class:`CampaignResult`."""
        result = CampaignResult(settings=self.settings, started_at=datetime.now(timezone.utc))
        if not self._prepared:
            self.prepare()
        result.skipped = dict(self.skipped)

        sequences: list[list[RequestSample]] = [[] for _ in self.handles]
        rounds = self.settings.rounds

        try:
            for round_number in range(1, rounds + 1):
                samples = await self._run_round(round_number)
                for sequence, sample in zip(sequences, samples):
                    sequence.append(sample)

                if self.progress:
                    self.progress(
                        round_number,
                        rounds,
                        [(h.endpoint, s) for h, s in zip(self.handles, samples)],
                    )

                # Inter-round pause (skip after last round).
                if round_number < rounds and self.settings.interval > 0:
                    await asyncio.sleep(self.settings.interval)
        finally:
            await self.aclose()

        for handle, sequence in zip(self.handles, sequences):
            result.results.append(
                EndpointResult(
                    endpoint=handle.endpoint,
                    samples=sequence,
                    summary=summarize(handle.endpoint, sequence),
                )
            )

        result.finished_at = datetime.now(timezone.utc)
        self.log.info(
            "Campaign finished: %d endpoints, %d rounds, %.1fs",
            len(result.results), rounds, result.duration,
        )
        return result

    async def aclose(self) -> None:
        """Close every handle, logging rather than raising on failure."""
        for handle in self.handles:
            try:
                await handle.aclose()
            except Exception as exc:
                self.log.debug("Closing %s failed: %s", handle.endpoint.label, exc)


async def run_campaign(
    settings: CampaignSettings,
    *,
    log: logging.Logger = logger,
    progress: Optional[ProgressCallback] = None,
    **kwargs,
) -> CampaignResult:
    """Build handles for *settings*, run every round and aggregate.

    Extra keyword arguments (``transport_factory``, ``probe``) are passed
    to :class:`RoundScheduler`.
    """
    scheduler = RoundScheduler(settings, log=log, progress=progress, **kwargs)
    scheduler.prepare()
    return await scheduler.run()

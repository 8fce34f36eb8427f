"""
Scrape orchestrator.

Runs one complete scrape of the smart meter per call: resolves the
meter address, queries instantaneous power and current, recovers from
a failed query by re-authenticating, decodes the response and reports
exactly one outcome to the metrics sink.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..devices.client import DeviceClient
from ..devices.device_session import DeviceSession
from ..metrics.sink import MetricsSink
from ..models import ScrapeOutcome
from ..protocols.echonet import (
    EPC_INSTANTANEOUS_CURRENT,
    EPC_INSTANTANEOUS_POWER,
    Frame,
    build_get_request,
)
from .decoder import decode_properties

logger = logging.getLogger(__name__)

# The meter needs settling time around re-authentication; both waits
# are part of the protocol and are not configurable.
REAUTH_COOLDOWN = 5.0
POST_AUTH_COOLDOWN = 2.0

DEFAULT_QUERY_RETRIES = 3

REQUESTED_PROPERTIES = (EPC_INSTANTANEOUS_POWER, EPC_INSTANTANEOUS_CURRENT)

SleepFunc = Callable[[float], Awaitable[None]]


class ScrapeOrchestrator:
    """
    Executes scrape cycles against a single meter.

    Every failure is absorbed: it is logged, counted once by kind and
    ends the cycle. Nothing but cancellation propagates to the caller.
    """

    def __init__(
        self,
        client: DeviceClient,
        sink: MetricsSink,
        query_retries: int = DEFAULT_QUERY_RETRIES,
        sleep: Optional[SleepFunc] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the orchestrator.

        Args:
            client: Device client for the meter.
            sink: Metrics sink receiving readings and outcomes.
            query_retries: Attempts the client makes per query.
            sleep: Async sleep used for the cooldowns (tests inject a fake).
            clock: Wall clock for the last-success timestamp.
            monotonic: Clock for measuring cycle duration.
        """
        self.client = client
        self.sink = sink
        self.query_retries = query_retries
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._monotonic = monotonic

    def build_request(self) -> Frame:
        """Build the Get request for instantaneous power and current."""
        return build_get_request(REQUESTED_PROPERTIES)

    async def run_scrape_cycle(self, session: DeviceSession) -> ScrapeOutcome:
        """
        Run one scrape cycle.

        Args:
            session: Session with the meter; its address is cached here.

        Returns:
            The outcome of the cycle.
        """
        start = self._monotonic()
        try:
            outcome = await self._scrape(session)
        finally:
            self.sink.record_duration(self._monotonic() - start)

        self.sink.increment_outcome(outcome)
        session.record_outcome(outcome)
        return outcome

    async def _scrape(self, session: DeviceSession) -> ScrapeOutcome:
        if not session.has_address:
            try:
                address = await self.client.resolve_address()
            except Exception as e:
                logger.error(f"Failed to scan neighbor IP: {e}")
                session.record_error(e)
                return ScrapeOutcome.IP_RESOLVE_FAILURE
            session.cache_address(address)

        request = self.build_request()

        try:
            response = await self.client.query(
                session.address, request, retries=self.query_retries
            )
        except Exception as e:
            logger.warning(f"Query failed: {e}")
            session.record_error(e)
            session.invalidate_authentication()

            outcome_or_response = await self._recover(session, request)
            if isinstance(outcome_or_response, ScrapeOutcome):
                return outcome_or_response
            response = outcome_or_response

        return self._publish(response)

    async def _recover(self, session: DeviceSession, request: Frame):
        """
        Re-authenticate and retry the query once.

        Returns:
            The response frame, or the failure outcome ending the cycle.
        """
        logger.info(f"Waiting {REAUTH_COOLDOWN:g}s before attempting re-auth...")
        await self._sleep(REAUTH_COOLDOWN)

        session.record_reauth_attempt()
        try:
            await self.client.authenticate(session.address)
        except Exception as e:
            logger.error(f"Authentication failed: {e}")
            session.record_error(e)
            return ScrapeOutcome.AUTH_FAILURE
        session.mark_authenticated()

        logger.info(
            f"Re-authentication successful. Waiting {POST_AUTH_COOLDOWN:g}s "
            f"before retrying query..."
        )
        await self._sleep(POST_AUTH_COOLDOWN)

        try:
            return await self.client.query(
                session.address, request, retries=self.query_retries
            )
        except Exception as e:
            logger.error(f"Query failed after re-auth: {e}")
            session.record_error(e)
            return ScrapeOutcome.QUERY_FAILURE

    def _publish(self, response: Frame) -> ScrapeOutcome:
        """Decode the response and push readings to the sink."""
        result = decode_properties(response.properties)

        if result.matched == 0:
            logger.warning("Response contained no recognized properties")
            return ScrapeOutcome.PARSE_FAILURE

        for reading in result.readings:
            self.sink.set_reading(reading)
        self.sink.record_success(self._clock())

        logger.info(
            "Scrape successful: "
            + ", ".join(f"{r.key}={r.value:g}" for r in result.readings)
        )
        return ScrapeOutcome.SUCCESS

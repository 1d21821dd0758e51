"""
Single-Target Prober

Classifies one address by trying every candidate protocol/port at once:
- ONVIF device service on each configured ONVIF port (80, 8080)
- TCP connect on the RTSP port (554)
- Plain HTTP HEAD (80)

Attempts run concurrently, each with its own deadline. The winner is the
first success in priority order, not the first to finish. A probe never
raises; every failure is folded into the result.

Manufacturer and model come from ONVIF device information when the winner
speaks ONVIF, otherwise from vendor markers on the device's web page.
"""

import asyncio
import logging
from typing import Iterable, List, Optional

import httpx

from config import settings
from errors import (
    MalformedResponseError,
    ProtocolConnectionError,
    ProtocolError,
    ProtocolTimeoutError,
)
from integrations.http_probe import HTTPProbe
from integrations.onvif_client import ONVIFClient
from integrations.rtsp_client import RTSPClient
from models.discovery import (
    UNKNOWN,
    Credentials,
    ProbeAttempt,
    ProbeFailureReason,
    ProbeResult,
    ProbeTarget,
    ProtocolAttemptResult,
    ProtocolKind,
    known_or_unknown,
)
from services.scan_logger import timed_stage

logger = logging.getLogger(__name__)


class Prober:
    """Stateless per-address protocol classifier"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        credentials: Optional[Credentials] = None,
        onvif_ports: Optional[List[int]] = None,
        rtsp_port: Optional[int] = None,
        http_port: Optional[int] = None,
        default_timeout: Optional[float] = None,
        enrich_timeout: Optional[float] = None,
    ):
        self.http_probe = HTTPProbe(http_client=http_client)
        self.credentials = credentials
        self.onvif_ports = onvif_ports or settings.onvif_ports
        self.rtsp_port = rtsp_port or settings.discovery_rtsp_port
        self.http_port = http_port or settings.discovery_http_port
        self.default_timeout = default_timeout if default_timeout is not None \
            else settings.discovery_probe_timeout_seconds
        self.enrich_timeout = enrich_timeout if enrich_timeout is not None else settings.onvif_timeout_seconds

    async def close(self):
        await self.http_probe.close()

    def build_target(self, address: str, protocols: Optional[Iterable[str]] = None) -> ProbeTarget:
        """Candidate attempts for an address in priority order."""
        wanted = {p.lower() for p in protocols} if protocols else None

        attempts: List[ProbeAttempt] = []
        if wanted is None or ProtocolKind.ONVIF.value in wanted:
            attempts.extend(ProbeAttempt(ProtocolKind.ONVIF, port) for port in self.onvif_ports)
        if wanted is None or ProtocolKind.RTSP.value in wanted:
            attempts.append(ProbeAttempt(ProtocolKind.RTSP, self.rtsp_port))
        if wanted is None or ProtocolKind.HTTP.value in wanted:
            attempts.append(ProbeAttempt(ProtocolKind.HTTP, self.http_port))

        return ProbeTarget(address=address, attempts=tuple(attempts))

    async def _probe_onvif(self, address: str, port: int, timeout: float) -> None:
        client = ONVIFClient(address, port, http_client=self.http_probe.http_client, timeout=timeout)
        await client.probe_device_service(timeout=timeout)

    async def _probe_rtsp(self, address: str, port: int, timeout: float) -> None:
        client = RTSPClient(address, port, http_probe=self.http_probe, test_timeout=timeout)
        await client.probe(timeout=timeout)

    async def _probe_http(self, address: str, port: int, timeout: float) -> None:
        await self.http_probe.ping(address, port=port, timeout=timeout)

    async def _attempt(self, address: str, attempt: ProbeAttempt, timeout: float) -> ProtocolAttemptResult:
        handlers = {
            ProtocolKind.ONVIF: self._probe_onvif,
            ProtocolKind.RTSP: self._probe_rtsp,
            ProtocolKind.HTTP: self._probe_http,
        }
        try:
            await handlers[attempt.protocol](address, attempt.port, timeout)
        except (ProtocolTimeoutError, asyncio.TimeoutError) as e:
            return ProtocolAttemptResult.failed(attempt, address, ProbeFailureReason.TIMEOUT, str(e))
        except MalformedResponseError as e:
            return ProtocolAttemptResult.failed(attempt, address, ProbeFailureReason.MALFORMED_RESPONSE, e.message)
        except ProtocolConnectionError as e:
            return ProtocolAttemptResult.failed(attempt, address, ProbeFailureReason.REFUSED, e.message)
        except Exception as e:
            logger.debug(f"Unexpected {attempt.protocol.value} probe error for {address}:{attempt.port}: {e}")
            return ProtocolAttemptResult.failed(attempt, address, ProbeFailureReason.REFUSED, str(e))

        return ProtocolAttemptResult.succeeded(attempt, address)

    async def _enrich_onvif(self, result: ProtocolAttemptResult) -> ProtocolAttemptResult:
        """Fill manufacturer/model from GetDeviceInformation, best effort."""
        client = ONVIFClient(
            result.address,
            result.port,
            credentials=self.credentials,
            http_client=self.http_probe.http_client,
            timeout=self.enrich_timeout,
        )
        try:
            info = await client.get_device_information()
        except ProtocolError as e:
            logger.debug(f"Device information unavailable for {result.address}:{result.port}: {e.message}")
            return result
        except Exception as e:
            logger.debug(f"Device information lookup failed for {result.address}:{result.port}: {e}")
            return result

        result.manufacturer = known_or_unknown(info.get("manufacturer"))
        result.model = known_or_unknown(info.get("model"))
        return result

    async def _identify_brand(self, address: str, port: int, timeout: float):
        return await self.http_probe.identify_brand(address, port=port, timeout=timeout)

    async def _fingerprint(self, winner: ProtocolAttemptResult, web_ports: List[int]) -> ProtocolAttemptResult:
        """Guess the vendor from the web interface on each open HTTP port, best effort."""
        for port in web_ports:
            try:
                match = await self._identify_brand(winner.address, port, self.enrich_timeout)
            except ProtocolError as e:
                logger.debug(f"Web fingerprint unavailable for {winner.address}:{port}: {e.message}")
                continue
            except Exception as e:
                logger.debug(f"Web fingerprint failed for {winner.address}:{port}: {e}")
                continue

            if match:
                brand, model = match
                winner.manufacturer = brand
                if winner.model is UNKNOWN:
                    winner.model = known_or_unknown(model)
                break
        return winner

    @timed_stage("probe")
    async def probe(
        self,
        address: str,
        protocols: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> ProbeResult:
        """
        Probe one address.

        Args:
            address: IPv4 address
            protocols: Subset of onvif/rtsp/http to try (all when None)
            timeout: Per-attempt deadline in seconds

        Returns:
            ProbeResult with the winning attempt, or unreachable
        """
        target = self.build_target(address, protocols)
        deadline = timeout if timeout is not None else self.default_timeout

        outcomes = await asyncio.gather(
            *(self._attempt(address, attempt, deadline) for attempt in target.attempts),
            return_exceptions=True,
        )

        attempts: List[ProtocolAttemptResult] = []
        for attempt, outcome in zip(target.attempts, outcomes):
            if isinstance(outcome, BaseException):
                outcome = ProtocolAttemptResult.failed(
                    attempt, address, ProbeFailureReason.REFUSED, repr(outcome)
                )
            attempts.append(outcome)

        winner = next((a for a in attempts if a.success), None)
        if winner is None:
            logger.debug(f"{address} unreachable ({len(attempts)} attempts failed)")
            return ProbeResult(address=address, attempts=attempts)

        if winner.protocol == ProtocolKind.ONVIF and winner.manufacturer is UNKNOWN:
            winner = await self._enrich_onvif(winner)

        web_ports = [a.port for a in attempts if a.success and a.protocol == ProtocolKind.HTTP]
        if winner.manufacturer is UNKNOWN and web_ports:
            winner = await self._fingerprint(winner, web_ports)

        logger.debug(f"{address} classified as {winner.protocol.value} on port {winner.port}")
        return ProbeResult(address=address, winner=winner, attempts=attempts)

"""
Latency probe for a single target.

Tries ICMP echo first and falls back to TCP handshakes on 53, 443 and 80.
Unprivileged or sandboxed processes often cannot send ICMP, and many hosts
drop it; a TCP handshake still gives a usable round-trip figure. The method
that succeeded is recorded on the sample because the two are not directly
comparable.
"""

import asyncio
import math
import re
import socket
import sys
import time
from typing import Iterable, List, Optional, Sequence, Union

from loguru import logger

from .models import (
    ProbeMethod, ProbeSuccess, ProbeTimeout, ProbeUnreachable, Sample, utcnow,
)

ProbeOutcome = Union[ProbeSuccess, ProbeTimeout, ProbeUnreachable]

_RTT_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)


def parse_ping_rtt(output: str) -> Optional[float]:
    """Extract the RTT in ms from ``ping`` output, if present."""
    match = _RTT_RE.search(output)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def icmp_command(address: str, timeout: float) -> List[str]:
    """Build a one-shot ``ping`` command line for the current platform."""
    if sys.platform == "win32":
        return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), address]
    seconds = str(max(1, math.ceil(timeout)))
    if sys.platform == "darwin":
        return ["ping", "-c", "1", "-t", seconds, address]
    return ["ping", "-c", "1", "-W", seconds, address]


def sample_from_outcomes(target: str, outcomes: Iterable[ProbeOutcome], timestamp=None) -> Sample:
    """Collapse a method chain into a sample: the first success wins."""
    timestamp = timestamp or utcnow()
    for outcome in outcomes:
        if isinstance(outcome, ProbeSuccess):
            return Sample(
                timestamp=timestamp,
                target=target,
                latency_ms=outcome.latency_ms,
                method=outcome.method,
            )
    return Sample(timestamp=timestamp, target=target)


class PingProber:
    """Measures round-trip latency to a host with an escalating method chain."""

    METHOD_CHAIN = (
        ProbeMethod.ICMP,
        ProbeMethod.TCP_DNS,
        ProbeMethod.TCP_HTTPS,
        ProbeMethod.TCP_HTTP,
    )

    def __init__(self, timeout: float = 2.0, methods: Optional[Sequence[ProbeMethod]] = None):
        self.timeout = timeout
        self.methods = tuple(methods) if methods else self.METHOD_CHAIN
        # DNS cache so hostname targets don't pay a lookup on every probe
        self._dns_cache: dict = {}
        self._cache_ttl = 300

    @property
    def worst_case_duration(self) -> float:
        """Upper bound for one full probe, used as a shutdown grace period."""
        return (self.timeout + 1.0) * (len(self.methods) + 1)

    async def probe(self, target: str) -> Sample:
        """Run the method chain against ``target``. Never raises."""
        address = await self._resolve(target)
        if address is None:
            logger.debug(f"Probe {target}: name resolution failed")
            return Sample(timestamp=utcnow(), target=target)

        outcomes: List[ProbeOutcome] = []
        for method in self.methods:
            outcome = await self._attempt_safe(address, method)
            outcomes.append(outcome)
            if isinstance(outcome, ProbeSuccess):
                logger.debug(f"Probe {target} via {method.value}: {outcome.latency_ms:.1f}ms")
                break
            logger.debug(f"Probe {target} via {method.value} failed: {outcome!r}")

        return sample_from_outcomes(target, outcomes, timestamp=utcnow())

    async def attempt(self, address: str, method: ProbeMethod) -> ProbeOutcome:
        """Execute a single method against an already-resolved address."""
        if method is ProbeMethod.ICMP:
            return await self._ping_icmp(address)
        return await self._connect_tcp(address, method)

    async def _attempt_safe(self, address: str, method: ProbeMethod) -> ProbeOutcome:
        try:
            return await asyncio.wait_for(
                self.attempt(address, method),
                timeout=self.timeout + 1.0,
            )
        except asyncio.TimeoutError:
            return ProbeTimeout(method)
        except Exception as e:
            return ProbeUnreachable(method, type(e).__name__)

    # ──────────────────────────────────────────────────────────────────
    # Methods
    # ──────────────────────────────────────────────────────────────────

    async def _ping_icmp(self, address: str) -> ProbeOutcome:
        method = ProbeMethod.ICMP
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *icmp_command(address, self.timeout),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            # no ping binary, or not allowed to run it
            return ProbeUnreachable(method, type(e).__name__)

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout + 0.5)
        except asyncio.TimeoutError:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            return ProbeTimeout(method)

        elapsed_ms = (time.monotonic() - start) * 1000
        output = stdout.decode(errors="ignore")

        if proc.returncode == 1:
            return ProbeTimeout(method)
        if proc.returncode != 0:
            return ProbeUnreachable(method, f"ping exited with {proc.returncode}")

        rtt = parse_ping_rtt(output)
        if rtt is None:
            # Windows reports success for "destination unreachable" replies
            if "ttl=" not in output.lower():
                return ProbeUnreachable(method, "no echo reply")
            rtt = elapsed_ms
        return ProbeSuccess(method, rtt)

    async def _connect_tcp(self, address: str, method: ProbeMethod) -> ProbeOutcome:
        start = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(address, method.port),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return ProbeTimeout(method)
        except OSError as e:
            return ProbeUnreachable(method, type(e).__name__)

        latency_ms = (time.monotonic() - start) * 1000
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"TCP close to {address}:{method.port} failed: {e}")
        return ProbeSuccess(method, latency_ms)

    # ──────────────────────────────────────────────────────────────────
    # DNS
    # ──────────────────────────────────────────────────────────────────

    async def _resolve(self, target: str) -> Optional[str]:
        """Resolve a hostname to an address, with a small TTL cache."""
        try:
            socket.inet_pton(socket.AF_INET6 if ":" in target else socket.AF_INET, target)
            return target
        except OSError:
            pass

        now = time.time()
        cached = self._dns_cache.get(target)
        if cached and now - cached[0] < self._cache_ttl:
            return cached[1]

        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(target, None, type=socket.SOCK_STREAM),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, OSError):
            return None
        if not infos:
            return None

        address = infos[0][4][0]
        self._dns_cache[target] = (now, address)
        return address

    def clear_dns_cache(self):
        self._dns_cache.clear()

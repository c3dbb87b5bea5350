from __future__ import annotations

import asyncio
import math
import sys
from typing import Awaitable, Callable

import structlog


logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _ping_args(address: str, timeout_seconds: float) -> list[str]:
    if sys.platform.startswith("win"):
        return ["ping", "-n", "1", "-w", str(max(1, int(timeout_seconds * 1000))), address]
    return ["ping", "-c", "1", "-W", str(max(1, int(math.ceil(timeout_seconds)))), address]


async def probe_reachability(address: str, *, timeout_seconds: float = 1.0) -> str:
    """
    Single ICMP echo via the system `ping` binary.

    Exit code 0 means "online"; anything else (including a missing binary) means "offline".
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *_ping_args(address, timeout_seconds),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (OSError, ValueError) as e:
        logger.warning("ping_spawn_failed", address=address, error=f"{type(e).__name__}: {e}")
        return "offline"

    try:
        rc = await asyncio.wait_for(proc.wait(), timeout=float(timeout_seconds) + 2.0)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return "offline"
    return "online" if rc == 0 else "offline"


async def probe_tcp(address: str, port: int, *, timeout_seconds: float = 0.9) -> str:
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(address, int(port)),
            timeout=float(timeout_seconds),
        )
    except (asyncio.TimeoutError, OSError, ValueError):
        return "closed"

    writer.close()
    try:
        await writer.wait_closed()
    except Exception:
        pass
    return "open"


async def probe_with_retry(
    probe: Callable[[], Awaitable[str]],
    *,
    good: str,
    delays: tuple[float, ...] = (5.0, 10.0, 15.0),
    sleep: Sleep = asyncio.sleep,
) -> str:
    """
    Probe once; on a bad result sleep through `delays`, re-probing after each.

    Returns `good` as soon as any attempt succeeds, otherwise the last bad result.
    """
    result = await probe()
    if result == good:
        return result
    for delay in delays:
        await sleep(float(delay))
        result = await probe()
        if result == good:
            return result
    return result

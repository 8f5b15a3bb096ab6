"""
Readiness Probe - Backoff polling until a child service is usable
Waits either for a port to become bound or for an HTTP endpoint to answer 2xx
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterator

import aiohttp

from errors import PortExhausted, ReadinessTimeout
from port_allocator import detect_port

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
HTTP_ATTEMPT_TIMEOUT = 2.0
INITIAL_DELAY = 0.1
MAX_DELAY = 1.0


def backoff_delays(initial: float = INITIAL_DELAY, cap: float = MAX_DELAY) -> Iterator[float]:
    """Yield delays that double after each failed attempt, capped at `cap`"""
    delay = initial
    while True:
        yield min(delay, cap)
        delay *= 2


async def poll_until(check: Callable[[float], Awaitable[bool]], timeout: float, target: str) -> None:
    """
    Call `check` with the remaining time until it returns True
    Sleeps with exponential backoff between attempts and raises ReadinessTimeout
    once `timeout` seconds have elapsed; no attempt starts after the deadline
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    delays = backoff_delays()
    attempts = 0

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break

        attempts += 1
        if await check(remaining):
            logger.debug(f"{target} ready after {attempts} attempt(s)")
            return

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(next(delays), remaining))

    logger.debug(f"{target} not ready after {attempts} attempt(s)")
    raise ReadinessTimeout(target, timeout)


async def await_port(port: int, timeout: float = DEFAULT_TIMEOUT) -> None:
    """
    Wait until something has bound `port`
    The port counts as bound once probing it for a free port yields a different one
    """

    async def port_taken(_remaining: float) -> bool:
        try:
            return await asyncio.to_thread(detect_port, port) != port
        except PortExhausted:
            return False

    await poll_until(port_taken, timeout, f"port {port}")


async def await_http(url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
    """Wait until a GET on `url` answers with a 2xx status"""
    async with aiohttp.ClientSession() as session:

        async def endpoint_ok(remaining: float) -> bool:
            attempt_timeout = aiohttp.ClientTimeout(total=min(HTTP_ATTEMPT_TIMEOUT, remaining))
            try:
                async with session.get(url, timeout=attempt_timeout, allow_redirects=False) as response:
                    return 200 <= response.status < 300
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug(f"Health check {url} not ready: {type(e).__name__}")
                return False

        await poll_until(endpoint_ok, timeout, f"health check: {url}")

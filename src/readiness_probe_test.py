#!/usr/bin/env python3
"""Tests for readiness_probe module."""

import asyncio
import socket
import unittest
from itertools import islice

from aiohttp import web

from errors import ReadinessTimeout
from readiness_probe import await_http, await_port, backoff_delays, poll_until


def reserve_port() -> int:
    """Ask the OS for a currently unused port"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def ipv6_loopback_listener() -> socket.socket:
    """Listening socket on ::1 only, as Node binds `localhost` on recent versions"""
    if not socket.has_ipv6:
        raise unittest.SkipTest("IPv6 not supported")
    sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind(("::1", 0))
        sock.listen(1)
    except OSError as e:
        sock.close()
        raise unittest.SkipTest(f"No IPv6 loopback: {e}")
    return sock


class TestBackoff(unittest.TestCase):
    """Test cases for the backoff schedule"""

    def test_doubles_then_caps(self):
        """Delays start at 100ms, double, and cap at one second"""
        self.assertEqual(list(islice(backoff_delays(), 7)), [0.1, 0.2, 0.4, 0.8, 1.0, 1.0, 1.0])

    def test_custom_schedule(self):
        """Initial delay and cap are configurable"""
        self.assertEqual(list(islice(backoff_delays(1.0, 3.0), 4)), [1.0, 2.0, 3.0, 3.0])


class TestPollUntil(unittest.IsolatedAsyncioTestCase):
    """Test cases for the generic polling loop"""

    async def test_succeeds_after_retries(self):
        """Returns as soon as the check passes"""
        calls = []

        async def check(_remaining):
            calls.append(1)
            return len(calls) == 3

        await poll_until(check, 5.0, "thing")
        self.assertEqual(len(calls), 3)

    async def test_times_out(self):
        """Raises ReadinessTimeout naming the target"""

        async def check(_remaining):
            return False

        with self.assertRaises(ReadinessTimeout) as ctx:
            await poll_until(check, 0.35, "thing")
        self.assertIn("thing", str(ctx.exception))

    async def test_remaining_time_never_negative(self):
        """Each attempt sees a positive remaining budget"""
        seen = []

        async def check(remaining):
            seen.append(remaining)
            return False

        with self.assertRaises(ReadinessTimeout):
            await poll_until(check, 0.3, "thing")
        self.assertTrue(seen)
        self.assertTrue(all(value > 0 for value in seen))


class TestAwaitPort(unittest.IsolatedAsyncioTestCase):
    """Test cases for port readiness"""

    async def test_bound_port_is_ready(self):
        """A listening socket on the port means ready"""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("", 0))
            sock.listen(1)
            port = sock.getsockname()[1]
            await asyncio.wait_for(await_port(port, timeout=5.0), timeout=6.0)

    async def test_ipv6_loopback_port_is_ready(self):
        """A server listening only on ::1 counts as ready"""
        with ipv6_loopback_listener() as sock:
            port = sock.getsockname()[1]
            await asyncio.wait_for(await_port(port, timeout=1.0), timeout=3.0)

    async def test_free_port_times_out(self):
        """Nothing ever binds the port"""
        port = reserve_port()
        with self.assertRaises(ReadinessTimeout):
            await await_port(port, timeout=0.3)


class TestAwaitHttp(unittest.IsolatedAsyncioTestCase):
    """Test cases for HTTP readiness against a live server"""

    async def asyncSetUp(self):
        self.status = 200
        self.hits = 0

        async def health(_request):
            self.hits += 1
            return web.Response(status=self.status, text="ok")

        app = web.Application()
        app.router.add_get("/api/health", health)
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        self.port = reserve_port()
        site = web.TCPSite(self.runner, "127.0.0.1", self.port)
        await site.start()
        self.url = f"http://127.0.0.1:{self.port}/api/health"

    async def asyncTearDown(self):
        await self.runner.cleanup()

    async def test_ok_response_is_ready(self):
        """A 200 resolves on the first attempt"""
        await await_http(self.url, timeout=5.0)
        self.assertEqual(self.hits, 1)

    async def test_non_ok_times_out_and_stops(self):
        """Only 503s until the deadline: timeout, then no further attempts"""
        self.status = 503
        with self.assertRaises(ReadinessTimeout):
            await await_http(self.url, timeout=0.5)
        hits_at_timeout = self.hits
        self.assertGreaterEqual(hits_at_timeout, 2)

        await asyncio.sleep(0.4)
        self.assertEqual(self.hits, hits_at_timeout)

    async def test_connection_refused_times_out(self):
        """Nothing listening counts as not ready"""
        url = f"http://127.0.0.1:{reserve_port()}/api/health"
        with self.assertRaises(ReadinessTimeout):
            await await_http(url, timeout=0.3)


if __name__ == "__main__":
    unittest.main()

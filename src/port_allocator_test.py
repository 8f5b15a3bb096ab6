#!/usr/bin/env python3
"""Tests for port_allocator module."""

import socket
import sys
import unittest
from unittest.mock import patch

from errors import PortExhausted
from port_allocator import (
    PortAssignment,
    PreferredPorts,
    allocate_ports,
    allocate_session_ports,
    detect_port,
    is_port_free,
)


def fake_detector(occupied):
    """Build a detect_port replacement that treats `occupied` as bound"""

    def detect(port):
        while port in occupied:
            port += 1
        return port

    return detect


def find_free_run(length):
    """Find `length` consecutive ports that are currently free"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("", 0))
        base = sock.getsockname()[1]

    for start in range(base, base + 500):
        if start + length > 65535:
            break
        if all(is_port_free(port) for port in range(start, start + length)):
            return start
    raise unittest.SkipTest("No run of free ports available")


class TestDetectPort(unittest.TestCase):
    """Test cases for the free-port probe"""

    def test_free_port_is_returned_as_is(self):
        """A free port resolves to itself"""
        base = find_free_run(1)
        self.assertEqual(detect_port(base), base)

    def test_bound_port_is_skipped(self):
        """A bound port resolves to a higher free one"""
        base = find_free_run(2)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("", base))
            sock.listen(1)
            self.assertEqual(detect_port(base), base + 1)

    def test_ipv6_loopback_port_is_busy(self):
        """A port held only on ::1 is not handed out"""
        if not socket.has_ipv6:
            self.skipTest("IPv6 not supported")
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as sock:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
                sock.bind(("::1", 0))
            except OSError as e:
                self.skipTest(f"No IPv6 loopback: {e}")
            sock.listen(1)
            port = sock.getsockname()[1]

            self.assertFalse(is_port_free(port))
            self.assertNotEqual(detect_port(port), port)

    @unittest.skipUnless(sys.platform.startswith("linux"), "TIME_WAIT reuse semantics are Linux specific")
    def test_time_wait_port_is_free(self):
        """Connections lingering in TIME_WAIT do not make a port busy"""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            # Node dev servers listen with SO_REUSEADDR too
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]

            client = socket.create_connection(("127.0.0.1", port))
            accepted, _addr = server.accept()
            # Closing the accepted side first leaves it in TIME_WAIT on `port`
            accepted.close()
            client.recv(1)
            client.close()

        self.assertTrue(is_port_free(port))


class TestAllocatePorts(unittest.IsolatedAsyncioTestCase):
    """Test cases for claimed-set allocation"""

    async def test_all_preferences_free(self):
        """Free preferences come back unchanged"""
        with patch("port_allocator.detect_port", fake_detector(set())):
            ports = await allocate_ports([3000, 3001, 3333])
        self.assertEqual(ports, [3000, 3001, 3333])

    async def test_collision_bumps_later_preference(self):
        """3000 busy resolves to 3001, so the 3001 preference becomes 3002"""
        with patch("port_allocator.detect_port", fake_detector({3000})):
            ports = await allocate_ports([3000, 3001])
        self.assertEqual(ports, [3001, 3002])

    async def test_identical_preferences_stay_distinct(self):
        """The same preference twice never yields the same port"""
        with patch("port_allocator.detect_port", fake_detector(set())):
            ports = await allocate_ports([4000, 4000, 4000])
        self.assertEqual(ports, [4000, 4001, 4002])

    async def test_ports_pairwise_distinct_and_free(self):
        """Real probing returns distinct ports that can be bound"""
        base = find_free_run(3)
        ports = await allocate_ports([base, base, base + 1])
        self.assertEqual(len(set(ports)), 3)
        for port in ports:
            self.assertTrue(is_port_free(port))

    async def test_real_occupied_port(self):
        """An actually bound preference is bumped past"""
        base = find_free_run(3)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("", base))
            sock.listen(1)
            ports = await allocate_ports([base, base + 1])
        self.assertEqual(ports, [base + 1, base + 2])

    async def test_exhaustion_is_bounded(self):
        """Retries stop after max_attempts with PortExhausted"""

        def always_claimed(port):
            return 5000

        with patch("port_allocator.detect_port", always_claimed):
            with self.assertRaises(PortExhausted) as ctx:
                await allocate_ports([5000, 5000], max_attempts=10)
        self.assertEqual(ctx.exception.preferred, 5000)
        self.assertEqual(ctx.exception.attempts, 10)

    async def test_session_order(self):
        """Session ports are allocated proxy, support, application"""
        with patch("port_allocator.detect_port", fake_detector({3000})):
            assignment = await allocate_session_ports(PreferredPorts(3000, 3001, 3333))
        self.assertEqual(assignment, PortAssignment(proxy_port=3001, support_port=3002, app_port=3333))
        self.assertEqual(assignment.as_list(), [3001, 3002, 3333])


if __name__ == "__main__":
    unittest.main()

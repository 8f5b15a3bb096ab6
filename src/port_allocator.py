#!/usr/bin/env python3
"""
Port Allocator - Picks mutually distinct free ports for one session
Each preference resolves to the first free port at or above it that no
earlier preference in the same call has already claimed
"""

import asyncio
import errno
import logging
import os
import socket
from dataclasses import dataclass
from typing import List, Set

from errors import PortExhausted

logger = logging.getLogger(__name__)

MAX_PORT = 65535
DEFAULT_MAX_ATTEMPTS = 1000

# Dev servers bind any of these; a port is free only when every one of them binds
PROBE_ADDRESSES = (
    (socket.AF_INET, "0.0.0.0"),
    (socket.AF_INET, "127.0.0.1"),
    (socket.AF_INET6, "::"),
    (socket.AF_INET6, "::1"),
)
# IPv6 disabled or no ::1 configured on this host
IPV6_UNAVAILABLE = {
    code
    for code in (
        errno.EAFNOSUPPORT,
        errno.EADDRNOTAVAIL,
        getattr(errno, "WSAEAFNOSUPPORT", None),
        getattr(errno, "WSAEADDRNOTAVAIL", None),
    )
    if code is not None
}


@dataclass(frozen=True)
class PreferredPorts:
    """Ports the user would like, before collisions are resolved"""
    proxy_port: int = 3000
    support_port: int = 3001
    app_port: int = 3333


@dataclass(frozen=True)
class PortAssignment:
    """Resolved ports for the proxy, support service and application"""
    proxy_port: int
    support_port: int
    app_port: int

    def as_list(self) -> List[int]:
        """Ports in allocation order"""
        return [self.proxy_port, self.support_port, self.app_port]


def _can_bind(family: int, address: str, port: int) -> bool:
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            if os.name == "posix":
                # Lingering TIME_WAIT connections do not make a port busy
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            sock.bind((address, port))
            return True
    except OSError as e:
        if family == socket.AF_INET6 and e.errno in IPV6_UNAVAILABLE:
            logger.debug(f"Skipping [{address}]:{port}: {e}")
            return True
        return False


def is_port_free(port: int) -> bool:
    """Check whether a port can be bound right now on IPv4 and IPv6, wildcard and loopback"""
    for family, address in PROBE_ADDRESSES:
        if family == socket.AF_INET6 and not socket.has_ipv6:
            continue
        if not _can_bind(family, address, port):
            return False
    return True


def detect_port(port: int) -> int:
    """Return the first port at or above `port` that is currently free"""
    for candidate in range(port, MAX_PORT + 1):
        if is_port_free(candidate):
            return candidate

    raise PortExhausted(port, MAX_PORT + 1 - port)


async def _allocate_port(preferred: int, claimed: Set[int], max_attempts: int) -> int:
    """Resolve one preference against the ports already claimed in this call"""
    candidate = preferred

    for _ in range(max_attempts):
        if candidate > MAX_PORT:
            break

        detected = await asyncio.to_thread(detect_port, candidate)
        if detected not in claimed:
            claimed.add(detected)
            return detected

        logger.debug(f"Port {detected} already claimed, retrying from {detected + 1}")
        candidate = detected + 1

    raise PortExhausted(preferred, max_attempts)


async def allocate_ports(preferred: List[int], max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> List[int]:
    """
    Allocate one free port per preference, in order
    Returned ports are pairwise distinct and were free when probed
    """
    claimed: Set[int] = set()
    ports = []

    for port in preferred:
        ports.append(await _allocate_port(port, claimed, max_attempts))

    logger.debug(f"Allocated ports {ports} for preferences {list(preferred)}")
    return ports


async def allocate_session_ports(preferred: PreferredPorts) -> PortAssignment:
    """Allocate proxy, support and application ports in that order"""
    proxy_port, support_port, app_port = await allocate_ports(
        [preferred.proxy_port, preferred.support_port, preferred.app_port]
    )
    return PortAssignment(proxy_port=proxy_port, support_port=support_port, app_port=app_port)

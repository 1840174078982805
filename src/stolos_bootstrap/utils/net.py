# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import logging
import socket

log = logging.getLogger("stolos")


def outbound_ip(target_host: str = "8.8.8.8", target_port: int = 80) -> str:
    """
    Address of the interface that routes to the internet.

    A UDP connect sends no packets; it only asks the kernel to pick a route.
    Falls back to loopback when the host has no route at all.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((target_host, target_port))
            return sock.getsockname()[0]
    except OSError as exc:
        log.warning("Could not determine outbound IP (%s); using 127.0.0.1", exc)
        return "127.0.0.1"

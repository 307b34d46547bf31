#!/usr/bin/env python3
"""
How phones reach this server: LAN address, listen address parsing, QR code.
"""

from __future__ import annotations

import ipaddress
import os
import platform
import socket
import subprocess
from typing import Optional, Tuple

import psutil
import qrcode
import qrcode.image.svg

from relay_common import log_debug

FALLBACK_PORT = "8080"


def _port_of(listen_addr: str) -> Optional[str]:
    """Port part of "host:port" / ":port" / "[v6]:port"; None if unparsable."""
    host, sep, port = listen_addr.rpartition(":")
    if not sep or not port.isdigit():
        return None
    if ":" in host and not (host.startswith("[") and host.endswith("]")):
        return None  # bare IPv6 without brackets is ambiguous
    return port


def split_listen_addr(listen_addr: str) -> Tuple[str, int]:
    """(host, port) for binding; empty host means all interfaces."""
    port = _port_of(listen_addr)
    if port is None:
        raise ValueError(f"invalid listen address {listen_addr!r} (expected host:port or :port)")
    host = listen_addr[: -(len(port) + 1)].strip("[]")
    return host or "0.0.0.0", int(port)


def _lan_ip() -> str:
    """First IPv4 address on an interface that is up and not loopback."""
    try:
        stats = psutil.net_if_stats()
        addrs = psutil.net_if_addrs()
    except (OSError, RuntimeError) as e:
        log_debug(f"[Net] Interface enumeration failed: {e}")
        return "localhost"

    for name, iface_addrs in addrs.items():
        st = stats.get(name)
        if st is None or not st.isup:
            continue
        for addr in iface_addrs:
            if addr.family != socket.AF_INET or not addr.address:
                continue
            try:
                if ipaddress.IPv4Address(addr.address).is_loopback:
                    continue
            except ValueError:
                continue
            return addr.address
    return "localhost"


def lan_url(listen_addr: str) -> str:
    """Best-guess http URL for reaching this server from the local network. Never raises."""
    port = _port_of(listen_addr) or FALLBACK_PORT
    return f"http://{_lan_ip()}:{port}"


def print_qr(url, svg_path=None):
    """Print QR code to console, or save it as SVG (background mode, no console)"""
    qr = qrcode.QRCode(version=1, box_size=10, border=2)
    qr.add_data(url)
    qr.make(fit=True)

    if svg_path:
        img = qr.make_image(image_factory=qrcode.image.svg.SvgImage)
        img.save(svg_path)
        # Open the image
        try:
            if platform.system() == "Windows":
                os.startfile(svg_path)
            elif platform.system() == "Darwin":
                subprocess.Popen(['open', svg_path], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            else:
                subprocess.Popen(['xdg-open', svg_path], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            log_debug(f"[QR] Could not open {svg_path}: {e}")
        return svg_path
    qr.print_ascii(invert=True)
    return None

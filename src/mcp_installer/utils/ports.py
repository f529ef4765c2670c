"""Port derivation helpers."""

from typing import Dict

# Conventional HTTP port -> HTTPS companion port
HTTPS_PORT_MAP: Dict[int, int] = {
    80: 443,
    8080: 8443,
    3000: 3443,
    5000: 5443,
    4000: 4443,
    8000: 8443,
}

HTTPS_PORT_OFFSET = 363


def default_https_port(http_port: int) -> int:
    """
    Derive the HTTPS port that pairs with an HTTP port.

    Args:
        http_port: Port the server listens on for plain HTTP

    Returns:
        The mapped port for well-known ports, otherwise ``http_port + 363``

    Raises:
        ValueError: If the port is outside 1-65535 or the derived port would exceed it
    """
    if not 0 < http_port <= 65535:
        raise ValueError(f"Invalid port: {http_port}")
    if http_port in HTTPS_PORT_MAP:
        return HTTPS_PORT_MAP[http_port]
    derived = http_port + HTTPS_PORT_OFFSET
    if derived > 65535:
        raise ValueError(f"No HTTPS port can be derived from {http_port}")
    return derived

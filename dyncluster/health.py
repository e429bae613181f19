from __future__ import annotations

import time

import httpx

ADMIN_PORT = 8091


def check_node(ipv4_address: str, port: int = ADMIN_PORT, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Probe a node's admin endpoint.

    Any HTTP answer below 500 means the server process is up (the admin UI
    redirects or asks for credentials before a cluster is initialised).
    Returns (is_ready, message, latency_ms).
    """
    url = f"http://{ipv4_address}:{int(port)}/pools"
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code >= 500:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Ready", latency_ms
    except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def wait_node_ready(
    ipv4_address: str,
    timeout_s: float,
    interval_s: float = 1.0,
    port: int = ADMIN_PORT,
) -> bool:
    """Poll check_node until it succeeds or timeout_s elapses."""
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        ok, _, _ = check_node(ipv4_address, port=port)
        if ok:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval_s)

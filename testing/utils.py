"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_until(
    condition: Callable[[], object],
    timeout: float = 5,
    interval: float = 0.01,
) -> None:
    """Wait until `condition()` is true.

    Raises:
        TimeoutError: If the condition is not met within `timeout` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() >= deadline:
            raise TimeoutError('Timeout waiting for condition.')
        await asyncio.sleep(interval)

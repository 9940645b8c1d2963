from __future__ import annotations

import asyncio
import contextlib
from typing import Any
from typing import ContextManager
from typing import Generator
from unittest import mock

import pytest
import uvloop

# Import fixtures from testing/ so they are known by pytest
# and can be used with
from testing.relay_server import relay_server
from testing.ssl import ssl_context


def pytest_addoption(parser):
    """Add custom command line options for tests."""
    parser.addoption(
        '--use-uvloop',
        action='store_true',
        default=False,
        help='Use uvloop as the default event loop for asyncio tests',
    )


@pytest.fixture(scope='session')
def use_uvloop(request) -> bool:
    """Fixture that returns if uvloop should be used in this session."""
    return request.config.getoption('--use-uvloop')


@pytest.fixture(scope='session')
def event_loop_policy(
    use_uvloop: bool,
) -> Generator[asyncio.AbstractEventLoopPolicy, None, None]:
    """Get the session-wide event loop policy.

    This enables us to toggle between uvloop and asyncio.
    """
    context: ContextManager[Any]
    if use_uvloop:  # pragma: no cover
        policy: asyncio.AbstractEventLoopPolicy = uvloop.EventLoopPolicy()
        context = contextlib.nullcontext()
    else:  # pragma: no cover
        policy = asyncio.DefaultEventLoopPolicy()
        context = mock.patch(
            'uvloop.install',
            side_effect=RuntimeError(
                'uvloop.install() was called when --use-uvloop=False. uvloop '
                'should only be used when --use-uvloop is passed to pytest.',
            ),
        )

    with context:
        yield policy

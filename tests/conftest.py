"""Shared test fixtures for runas-rpc tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from runas_rpc import ClientHandle, RunAs
from tests.serve_fixture_runas import build_runas, fixture_cmd, own_credential


@pytest.fixture
def runas() -> RunAs:
    """A bootstrapped parent-role RunAs that re-executes the fixture program."""
    ctx = build_runas(command=fixture_cmd())
    ctx.maybe_run_child_server(environ={})
    return ctx


@pytest.fixture
def handle(runas: RunAs) -> Iterator[ClientHandle]:
    """A child dropped to the test process's own identity."""
    h = runas.spawn(own_credential())
    yield h
    h.close()


@pytest.fixture
def clean_runas_logging() -> Iterator[None]:
    """Remove handlers and the level set on the ``runas_rpc`` logger during a test."""
    logger = logging.getLogger("runas_rpc")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for h in list(logger.handlers):
        if h not in handlers:
            logger.removeHandler(h)
    logger.setLevel(level)

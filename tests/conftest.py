"""
Shared fixtures for the test suite.
"""

import logging
import threading

import pytest

from scma_gsync.api.base import RemoteAdapter
from scma_gsync.utils.logging import LOGGER_NAME


class FakeAdapter(RemoteAdapter):
    """
    In-memory remote service.

    Records every call so tests can check exactly which mutations were
    issued. ``errors`` maps an identity key to an exception raised when
    that entity is created or updated.
    """

    def __init__(self, remote=None, kind="event", errors=None):
        self.remote = list(remote or [])
        self.kind = kind
        self.errors = dict(errors or {})
        self.calls = []
        self.list_calls = 0
        self._lock = threading.Lock()

    def list(self):
        self.list_calls += 1
        return list(self.remote)

    def _record(self, call):
        with self._lock:
            self.calls.append(call)
        error = self.errors.get(call[-1].identity_key)
        if error is not None:
            raise error

    def create(self, entity):
        self._record(("create", None, entity))
        return f"ref-{entity.identity_key}"

    def update(self, remote_ref, entity):
        self._record(("update", remote_ref, entity))


@pytest.fixture
def fake_adapter():
    """Factory for FakeAdapter instances."""
    return FakeAdapter


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo handlers installed by setup_logging so caplog keeps working."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)

"""
Pytest configuration for the Intcode test suite.

    python -m pytest                 # everything
    python -m pytest -m "not threads"   # skip the multi-threaded topologies

Tests marked ``threads`` start worker threads.  A deadlock there would
hang the whole run, so each such test arms a faulthandler watchdog that
dumps every thread's stack and exits after INTCODE_TEST_TIMEOUT seconds
(default 30).
"""

import faulthandler
import os

import pytest

TEST_TIMEOUT = float(os.environ.get("INTCODE_TEST_TIMEOUT", "30"))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "threads: tests that run VMs on worker threads (watchdog armed)")


@pytest.fixture(autouse=True)
def _thread_watchdog(request):
    if request.node.get_closest_marker("threads") is None:
        yield
        return
    faulthandler.dump_traceback_later(TEST_TIMEOUT, exit=True)
    try:
        yield
    finally:
        faulthandler.cancel_dump_traceback_later()

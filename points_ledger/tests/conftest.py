import threading
from concurrent.futures import ThreadPoolExecutor

import pytest


def _run_together(count, func):
    barrier = threading.Barrier(count)

    def call():
        barrier.wait()
        try:
            return func()
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(call) for _ in range(count)]
        return [f.result() for f in futures]


@pytest.fixture
def run_together():
    """Start ``count`` calls of ``func`` behind a barrier and collect results or errors."""
    return _run_together

import asyncio
import shutil
import tempfile
import os

import pytest

from picker_types import TransportError


@pytest.fixture
def socket_path():
    # Unix socket paths are limited to ~108 bytes, keep it short
    tmp_dir = tempfile.mkdtemp(prefix="picker-")
    yield os.path.join(tmp_dir, "companion", "picker.sock")
    shutil.rmtree(tmp_dir, ignore_errors=True)


class FakeIpcClient:
    """Answers query_selection from a canned result, optionally after a delay."""

    def __init__(self, result, delay=0.0):
        self.result = result
        self.delay = delay
        self.queries = []

    async def query_selection(self, session=None):
        self.queries.append(session)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, TransportError):
            raise self.result
        return self.result

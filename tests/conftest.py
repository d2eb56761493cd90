import asyncio

import pytest

from miotywatch.config import Settings
from miotywatch.store import StateStore


# =========================== fakes ===========================================


def _resolve(result):
    if isinstance(result, BaseException):
        raise result
    return result


class FakeExecutor:
    """Stands in for SshExecutor; `handler(address, command)` returns output or an exception."""

    def __init__(self, handler=None):
        self.calls = []
        self.handler = handler or (lambda address, command: "")

    async def execute(self, address, command):
        self.calls.append((address, command))
        return _resolve(self.handler(address, command))

    def commands(self):
        return [command for _address, command in self.calls]


class FakeFetcher:
    def __init__(self, handler=None):
        self.calls = []
        self.handler = handler or (lambda address, remote_path: b"")

    async def fetch(self, address, remote_path):
        self.calls.append((address, remote_path))
        return _resolve(self.handler(address, remote_path))


class FakeRunner:
    """Stands in for LocalRunner; `handler(argv)` returns stdout or an exception."""

    def __init__(self, handler=None):
        self.calls = []
        self.handler = handler or (lambda argv: "")

    async def run(self, argv, *, privileged=False, input_text=None):
        self.calls.append((list(argv), privileged, input_text))
        return _resolve(self.handler(list(argv)))

    def argvs(self):
        return [argv for argv, _privileged, _input in self.calls]


def run(coro):
    return asyncio.run(coro)


# =========================== fixtures ========================================


@pytest.fixture
def settings(tmp_path):
    return Settings(
        edge_candidates=("10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"),
        ssh_key=str(tmp_path / "id_rsa"),
        dispatcher_dir=str(tmp_path / "dispatcher.d"),
        log_file="",
    )


@pytest.fixture
def store():
    return StateStore(cli_version="test")

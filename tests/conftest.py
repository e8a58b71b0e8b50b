import pytest


class FakeRunner:
    """Stand-in process handle for registry tests."""

    def __init__(self, pid=4242, returncode=None):
        self._pid = pid
        self._returncode = returncode
        self.kills = []

    @property
    def pid(self):
        return self._pid

    @property
    def returncode(self):
        return self._returncode

    def kill(self, force=False):
        self.kills.append(force)
        self._returncode = -9

    def close(self):
        pass


@pytest.fixture
def fake_runner():
    return FakeRunner()

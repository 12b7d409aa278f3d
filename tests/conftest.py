"""Shared fixtures for the voter tests."""

import pytest


@pytest.fixture
def write_inputs(tmp_path):
    """Factory writing each buffer to its own file and returning the paths."""

    def _write(*buffers):
        paths = []
        for i, data in enumerate(buffers):
            path = tmp_path / f"dump{i}.bin"
            path.write_bytes(bytes(data))
            paths.append(str(path))
        return paths

    return _write


class FailingSink:
    """Binary sink that accepts a fixed number of writes, then fails."""

    def __init__(self, fail_after):
        self.fail_after = fail_after
        self.writes = []

    def write(self, data):
        if len(self.writes) >= self.fail_after:
            raise OSError(28, "No space left on device")
        self.writes.append(bytes(data))
        return len(data)


@pytest.fixture
def failing_sink():
    return FailingSink

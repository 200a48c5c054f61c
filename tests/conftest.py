"""Pytest configuration and shared fixtures for p4oc tests."""

import pytest

import p4oc.io.logging_setup


# ---------------------------------------------------------------------------
# Isolation fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep settings and log files out of the real home directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("P4OC_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("P4OC_LOG_FILE", raising=False)
    monkeypatch.delenv("P4OC_LOG_LEVEL", raising=False)
    monkeypatch.delenv("P4OC_SERVER_URL", raising=False)
    yield
    # configure() detaches the p4oc tree from the root logger; undo it so
    # caplog keeps working in later tests.
    p4oc.io.logging_setup.reset()


class FakeClock:
    """Deterministic epoch-ms clock: every call advances by one."""

    def __init__(self, start=1_000):
        self.now = start

    def __call__(self):
        self.now += 1
        return self.now


@pytest.fixture
def clock():
    return FakeClock()

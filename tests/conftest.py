"""Pytest configuration and fixtures for tests."""

import time
from typing import Any

import pytest

from thingscloud_mcp.backend import BackendAuthError
from thingscloud_mcp.oauth_provider import ThingsOAuthProvider, ThingsOAuthSettings

TEST_SECRET = "test-token-secret-that-is-long-enough-for-hs256-signing"
TEST_EMAIL = "user@example.com"
TEST_PASSWORD = "correct-horse-battery-staple"


class FakeVerifier:
    """Account verifier accepting a fixed set of email/password pairs."""

    def __init__(self, accounts: dict[str, str] | None = None) -> None:
        self.accounts = accounts if accounts is not None else {TEST_EMAIL: TEST_PASSWORD}
        self.calls: list[str] = []

    async def verify(self, email: str, password: str) -> dict[str, Any]:
        self.calls.append(email)
        if self.accounts.get(email) != password:
            raise BackendAuthError("Things Cloud rejected the credentials")
        return {"email": email, "history-key": "history-1"}


class FakeClock:
    """Settable wall clock starting at the current time."""

    def __init__(self) -> None:
        self.now = time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> ThingsOAuthSettings:
    """Settings with a fixed signing secret."""
    return ThingsOAuthSettings(token_secret=TEST_SECRET)


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider(
    settings: ThingsOAuthSettings, verifier: FakeVerifier, clock: FakeClock
) -> ThingsOAuthProvider:
    """OAuth provider with in-memory stores and a controllable clock."""
    return ThingsOAuthProvider(settings, verifier, clock=clock)

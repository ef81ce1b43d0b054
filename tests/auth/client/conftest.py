import pytest

from relay.auth.client.primitives.storage import CredentialStore, server_identity
from relay.auth.client.services.provider import (
    OAuthClientProvider,
    OAuthProviderOptions,
)

SERVER_URL = "https://mcp.example.com/mcp"


class FakeProbe:
    """Liveness probe where only PIDs in ``alive`` are running."""

    def __init__(self, alive=()):
        self.alive = set(alive)

    def start_time(self, pid):
        return 1000.0 + pid

    def is_alive(self, pid, started_at=None):
        return pid in self.alive


class RecordingBrowser:
    """Stands in for webbrowser.open."""

    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.opened: list[str] = []

    def __call__(self, url):
        self.opened.append(url)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "config")


@pytest.fixture
def identity():
    return server_identity(SERVER_URL)


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def browser():
    return RecordingBrowser()


@pytest.fixture
def messages():
    return []


@pytest.fixture
def make_provider(store, browser, messages):
    """Build providers that share the test store, like separate processes."""

    def factory(environ=None, **options):
        options.setdefault("server_url", SERVER_URL)
        options.setdefault("callback_port", 3334)
        return OAuthClientProvider(
            OAuthProviderOptions(**options),
            store=store,
            environ=environ or {},
            browser=browser,
            notify=messages.append,
        )

    return factory

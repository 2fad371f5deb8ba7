import httpx
import pytest

from helpers import make_image
from meterbill.config import Settings
from meterbill.extraction.client import GeminiClient


@pytest.fixture
def png_bytes():
    return make_image()


@pytest.fixture
def settings():
    return Settings(
        api_key="test-key",
        models=("model-a",),
        max_attempts=3,
        initial_retry_delay=2.0,
        fallback_delay=1.0,
        max_concurrency=2,
    )


@pytest.fixture
def sleeps():
    """Records requested delays instead of sleeping."""
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    fake_sleep.delays = delays
    return fake_sleep


@pytest.fixture
def make_client(settings, sleeps):
    """Build a GeminiClient whose HTTP traffic goes to handler(request)."""

    def factory(handler, **overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GeminiClient(settings, http=http, sleep=sleeps)

    return factory

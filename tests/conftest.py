import sys
from pathlib import Path

import pytest


# Ensure tests can import the encore package regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from encore.models import Provider, Track  # noqa: E402


def build_track(
    title: str = "Song",
    author: str = "Artist",
    provider: Provider = Provider.YOUTUBE,
    provider_id: str | None = None,
    duration_ms: int | None = 200_000,
    **kwargs,
) -> Track:
    provider_id = provider_id or f"{title}-{author}".lower().replace(" ", "-")
    url = kwargs.pop("url", f"https://example.test/{provider.value}/{provider_id}")
    return Track(
        title=title,
        author=author,
        url=url,
        provider=provider,
        provider_id=provider_id,
        duration_ms=duration_ms,
        **kwargs,
    )


@pytest.fixture
def make_track():
    return build_track

"""
Audio sink interface implemented by the chat platform layer
"""
from typing import Callable, Protocol

from encore.models import Provider, SessionContext, Track
from encore.services.acquisition import AudioStream

FinishCallback = Callable[[Exception | None], None]


class AudioSink(Protocol):
    """Plays one AudioStream at a time.

    ``on_finish`` may be called from any thread once playback ends, with the
    error that stopped it (or None). Calling ``stop`` also triggers it.
    """

    def play(self, stream: AudioStream, on_finish: FinishCallback) -> None:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def set_volume(self, volume: int) -> None:
        ...


class StreamSource(Protocol):
    """What the queue manager needs from the acquisition engine."""

    async def get_stream(self, track: Track, owner: SessionContext | None = None) -> AudioStream:
        ...

    async def cancel(self, owner: SessionContext) -> int:
        ...

    def provider_available(self, provider: Provider) -> bool:
        ...

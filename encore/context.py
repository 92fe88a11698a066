"""
Process-wide context - owns the shared resolution/acquisition components
"""
import asyncio
import logging
from dataclasses import dataclass, field

from encore.database.connection import DatabaseManager
from encore.database.snapshots import QueueSnapshotStore
from encore.models import Provider, SessionContext
from encore.player.audio import AudioSink
from encore.player.manager import PlaybackQueueManager, PlaybackSettings
from encore.services.acquisition import (
    AlternateProviderMethod,
    CacheMethod,
    DirectStreamMethod,
    PipelineMethod,
    PlaybackResolveMethod,
    SearchFallbackMethod,
    StreamAcquisitionEngine,
)
from encore.services.base import ProviderClient
from encore.services.cache import CacheStore
from encore.services.direct import DirectAudioService
from encore.services.health import MethodHealthTracker
from encore.services.pipeline import DownloadPipeline
from encore.services.recommendations import RadioRecommender
from encore.services.resolver import TrackResolver
from encore.services.soundcloud import SoundCloudService
from encore.services.spotify import SpotifyService
from encore.services.youtube import YouTubeService

logger = logging.getLogger(__name__)


def build_engine(
    health: MethodHealthTracker,
    cache: CacheStore,
    pipeline: DownloadPipeline,
    resolver: TrackResolver,
    providers: dict[Provider, ProviderClient],
    direct_timeout: float = 12.0,
    download_timeout: float = 300.0,
    max_concurrent_streams: int = 5,
) -> StreamAcquisitionEngine:
    """Wire the default method chains for every provider."""
    engine = StreamAcquisitionEngine(
        health,
        resolver=resolver,
        pipeline=pipeline,
        max_concurrent_streams=max_concurrent_streams,
    )
    cache_check = CacheMethod(cache)
    alternate = AlternateProviderMethod(engine, timeout=download_timeout)

    for provider, client in providers.items():
        if provider.playable:
            engine.set_chain(provider, [
                cache_check,
                DirectStreamMethod(client, timeout=direct_timeout),
                PipelineMethod(pipeline, provider, timeout=download_timeout),
                alternate,
            ])
        else:
            engine.set_chain(provider, [
                cache_check,
                PlaybackResolveMethod(engine, timeout=download_timeout),
            ])
    # Direct links have no alternate worth searching for
    if Provider.DIRECT in providers:
        engine.set_chain(Provider.DIRECT, engine.chains[Provider.DIRECT][:3])

    engine.fallbacks = [SearchFallbackMethod(pipeline, timeout=download_timeout)]
    return engine


@dataclass
class EncoreContext:
    """Everything shared between voice sessions, created once per process."""
    db: DatabaseManager
    cache: CacheStore
    health: MethodHealthTracker
    pipeline: DownloadPipeline
    providers: dict[Provider, ProviderClient]
    resolver: TrackResolver
    engine: StreamAcquisitionEngine
    recommender: RadioRecommender
    snapshots: QueueSnapshotStore
    settings: PlaybackSettings
    maintenance_interval: float = 600.0
    _maintenance_task: asyncio.Task | None = field(default=None, repr=False)

    @classmethod
    async def create(cls, cfg) -> "EncoreContext":
        db = await DatabaseManager.create(cfg.DATABASE_PATH)
        cache = CacheStore(cfg.CACHE_DIR, ttl_seconds=cfg.CACHE_TTL_SECONDS, max_bytes=cfg.CACHE_MAX_BYTES)
        health = MethodHealthTracker(
            base_cooldown=cfg.METHOD_BASE_COOLDOWN,
            max_cooldown=cfg.METHOD_MAX_COOLDOWN,
            failure_ceiling=cfg.METHOD_FAILURE_CEILING,
        )
        pipeline = DownloadPipeline(
            cache,
            cfg.TEMP_DIR,
            ytdlp_path=cfg.YTDLP_PATH,
            ffmpeg_path=cfg.FFMPEG_PATH,
            download_timeout=cfg.DOWNLOAD_TIMEOUT,
            transcode_timeout=cfg.TRANSCODE_TIMEOUT,
            socket_timeout=cfg.YTDLP_SOCKET_TIMEOUT,
            retries=cfg.YTDLP_RETRIES,
            cookies_path=cfg.YTDL_COOKIES_PATH,
            po_token=cfg.YTDL_PO_TOKEN,
        )
        pipeline.cleanup_temp()

        youtube = YouTubeService(
            cfg.YTDL_COOKIES_PATH, cfg.YTDL_PO_TOKEN,
            ytdlp_path=cfg.YTDLP_PATH,
            metadata_timeout=cfg.METADATA_TIMEOUT,
            stream_timeout=cfg.DIRECT_STREAM_TIMEOUT,
            socket_timeout=cfg.YTDLP_SOCKET_TIMEOUT,
        )
        providers: dict[Provider, ProviderClient] = {
            Provider.YOUTUBE: youtube,
            Provider.SPOTIFY: SpotifyService(
                cfg.SPOTIFY_CLIENT_ID, cfg.SPOTIFY_CLIENT_SECRET, metadata_timeout=cfg.METADATA_TIMEOUT
            ),
            Provider.SOUNDCLOUD: SoundCloudService(
                cfg.YTDLP_PATH,
                metadata_timeout=cfg.METADATA_TIMEOUT,
                stream_timeout=cfg.DIRECT_STREAM_TIMEOUT,
                socket_timeout=cfg.YTDLP_SOCKET_TIMEOUT,
            ),
            Provider.DIRECT: DirectAudioService(timeout=cfg.METADATA_TIMEOUT),
        }
        resolver = TrackResolver(providers, search_timeout=cfg.SEARCH_TIMEOUT)
        engine = build_engine(
            health, cache, pipeline, resolver, providers,
            direct_timeout=cfg.DIRECT_STREAM_TIMEOUT,
            download_timeout=cfg.DOWNLOAD_TIMEOUT + cfg.TRANSCODE_TIMEOUT,
            max_concurrent_streams=cfg.MAX_CONCURRENT_STREAMS,
        )
        logger.info("Encore context initialized")
        return cls(
            db=db,
            cache=cache,
            health=health,
            pipeline=pipeline,
            providers=providers,
            resolver=resolver,
            engine=engine,
            recommender=RadioRecommender(youtube),
            snapshots=QueueSnapshotStore(db),
            settings=PlaybackSettings.from_config(cfg),
            maintenance_interval=cfg.MAINTENANCE_INTERVAL_SECONDS,
        )

    def create_manager(self, session: SessionContext, sink: AudioSink) -> PlaybackQueueManager:
        return PlaybackQueueManager(
            session,
            self.engine,
            sink,
            store=self.snapshots,
            recommender=self.recommender,
            settings=self.settings,
        )

    def start(self) -> None:
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    def run_maintenance(self) -> None:
        removed = self.cache.sweep()
        forgotten = self.health.sweep()
        logger.info(f"Maintenance: {removed} cache file(s) removed, {forgotten} idle health record(s) dropped")

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval)
            try:
                self.run_maintenance()
            except OSError as e:
                logger.error(f"Maintenance sweep failed: {e}")

    async def close(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
        cancelled = await self.pipeline.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} pipeline job(s) on shutdown")
        for client in self.providers.values():
            await client.shutdown()
        await self.db.close()

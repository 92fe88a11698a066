"""
Music Cog - Slash commands driving one PlaybackQueueManager per guild
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC

import discord
from discord import app_commands
from discord.ext import commands

from encore.config import config
from encore.errors import EncoreError
from encore.models import LoopMode, PlaybackState, SessionContext, Track
from encore.player.audio import FinishCallback
from encore.player.manager import PlaybackQueueManager
from encore.services.acquisition import AudioStream

logger = logging.getLogger(__name__)

QUEUE_PAGE_SIZE = 15


class DiscordAudioSink:
    """AudioSink that plays through a discord.py voice client with ffmpeg."""

    FFMPEG_OPTIONS = {
        "before_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -nostdin",
        "options": "-vn",
    }

    def __init__(self, voice_client: discord.VoiceClient | None = None, ffmpeg_path: str = "ffmpeg",
                 volume: int = 50):
        self.voice_client = voice_client
        self.ffmpeg_path = ffmpeg_path
        self.volume = volume
        self._source: discord.PCMVolumeTransformer | None = None

    def _build_source(self, stream: AudioStream) -> discord.AudioSource:
        if stream.kind == "url":
            before = self.FFMPEG_OPTIONS["before_options"]
            if stream.http_headers:
                headers = "".join(f"{k}: {v}\r\n" for k, v in stream.http_headers.items())
                before = f'{before} -headers "{headers}"'
            return discord.FFmpegPCMAudio(
                stream.source, executable=self.ffmpeg_path,
                before_options=before, options=self.FFMPEG_OPTIONS["options"],
            )
        if stream.handle is not None:
            # The open handle keeps the cached file readable even if it is swept mid-play
            return discord.FFmpegPCMAudio(
                stream.handle, executable=self.ffmpeg_path, pipe=True,
                options=self.FFMPEG_OPTIONS["options"],
            )
        return discord.FFmpegPCMAudio(stream.source, executable=self.ffmpeg_path,
                                      options=self.FFMPEG_OPTIONS["options"])

    def play(self, stream: AudioStream, on_finish: FinishCallback) -> None:
        if not self.voice_client or not self.voice_client.is_connected():
            raise discord.ClientException("Not connected to a voice channel")
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()
        self._source = discord.PCMVolumeTransformer(self._build_source(stream), volume=self.volume / 100)
        self.voice_client.play(self._source, after=on_finish)

    def pause(self) -> None:
        if self.voice_client and self.voice_client.is_playing():
            self.voice_client.pause()

    def resume(self) -> None:
        if self.voice_client and self.voice_client.is_paused():
            self.voice_client.resume()

    def stop(self) -> None:
        if self.voice_client and (self.voice_client.is_playing() or self.voice_client.is_paused()):
            self.voice_client.stop()
        self._source = None

    def set_volume(self, volume: int) -> None:
        self.volume = volume
        if self._source is not None:
            self._source.volume = volume / 100


@dataclass
class GuildSession:
    """Per-guild playback state held by the cog."""
    manager: PlaybackQueueManager
    sink: DiscordAudioSink
    text_channel_id: int | None = None
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))

    def touch(self) -> None:
        self.last_activity = datetime.now(UTC)


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    IDLE_CHECK_INTERVAL = 60

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.sessions: dict[int, GuildSession] = {}
        self._session_lock = asyncio.Lock()
        self._idle_check_task: asyncio.Task | None = None

    @property
    def context(self):
        return self.bot.context

    async def cog_load(self):
        """Called when the cog is loaded."""
        self._idle_check_task = asyncio.create_task(self._idle_check_loop())
        logger.info("Music cog loaded")

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        if self._idle_check_task:
            self._idle_check_task.cancel()

        for guild_id, session in list(self.sessions.items()):
            await session.manager.shutdown()
            if session.sink.voice_client:
                try:
                    await session.sink.voice_client.disconnect(force=True)
                except discord.DiscordException as e:
                    logger.warning(f"Voice disconnect failed for {guild_id}: {e}")
        self.sessions.clear()
        logger.info("Music cog unloaded")

    # ==================== SESSIONS ====================

    @staticmethod
    def _voice_channel_id(interaction: discord.Interaction) -> int | None:
        voice = getattr(interaction.user, "voice", None)
        return voice.channel.id if voice and voice.channel else None

    async def get_session(self, guild_id: int, voice_channel_id: int | None = None) -> GuildSession:
        """Get or create the session for a guild, restoring its saved queue."""
        async with self._session_lock:
            session = self.sessions.get(guild_id)
            if session is not None:
                return session

            sink = DiscordAudioSink(ffmpeg_path=config.FFMPEG_PATH, volume=config.DEFAULT_VOLUME)
            manager = self.context.create_manager(SessionContext(guild_id, voice_channel_id), sink)
            session = GuildSession(manager=manager, sink=sink)
            manager.on_track_start = lambda track: self._announce(session, f"🎵 Now playing **{track.display()}**")
            manager.on_track_failed = lambda track, error: self._announce(
                session, f"⚠️ Couldn't play **{track.display()}**: {error}"
            )
            manager.on_abort = lambda reason: self._announce(session, f"🛑 Playback stopped: {reason}")

            if await manager.restore():
                sink.set_volume(manager.volume)
            self.sessions[guild_id] = session
            return session

    async def _announce(self, session: GuildSession, message: str) -> None:
        if session.text_channel_id is None:
            return
        channel = self.bot.get_channel(session.text_channel_id)
        if channel is None:
            return
        try:
            await channel.send(message)
        except discord.DiscordException as e:
            logger.warning(f"Failed to send message to {session.text_channel_id}: {e}")

    async def _ensure_voice(self, interaction: discord.Interaction, session: GuildSession) -> bool:
        """Connect to the caller's voice channel; False (with a reply sent) when that's impossible."""
        if not interaction.user.voice or not interaction.user.voice.channel:
            await interaction.followup.send("❌ You need to be in a voice channel!", ephemeral=True)
            return False

        voice_channel = interaction.user.voice.channel
        voice_client = session.sink.voice_client
        if voice_client and voice_client.is_connected():
            if voice_client.channel.id != voice_channel.id:
                await voice_client.move_to(voice_channel)
            session.manager.bind_voice_channel(voice_channel.id)
            return True

        try:
            session.sink.voice_client = await voice_channel.connect(self_deaf=True, timeout=20.0)
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            await interaction.followup.send(f"❌ Failed to connect: {e}", ephemeral=True)
            return False
        session.manager.bind_voice_channel(voice_channel.id)
        logger.info(f"Connected to {voice_channel.name} in {interaction.guild.name}")
        return True

    async def _lookup(self, query: str) -> Track | None:
        resolver = self.context.resolver
        if query.startswith(("http://", "https://")):
            return await resolver.resolve_url(query)
        results = await resolver.search(query, limit=5)
        return results[0] if results else None

    async def _disconnect(self, guild_id: int, session: GuildSession, reason: str) -> None:
        await session.manager.stop()
        await session.manager.flush()
        voice_client = session.sink.voice_client
        session.sink.voice_client = None
        if voice_client:
            await voice_client.disconnect()
        logger.info(f"Disconnected from {guild_id}: {reason}")

    # ==================== COMMANDS ====================

    @app_commands.command(name="play", description="Search for a song or paste a link")
    @app_commands.describe(query="Song name, search query or URL")
    async def play(self, interaction: discord.Interaction, query: str):
        """Resolve a query or URL and add it to the queue."""
        await interaction.response.defer(ephemeral=True)
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        if not await self._ensure_voice(interaction, session):
            return

        try:
            track = await self._lookup(query)
        except EncoreError as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
            return
        if track is None:
            await interaction.followup.send(f"❌ No results found for: `{query}`", ephemeral=True)
            return

        track.requester_id = interaction.user.id
        session.text_channel_id = interaction.channel_id
        session.touch()

        manager = session.manager
        length = manager.add_to_queue(track)
        logger.info(f"Queued {track.display()} in {interaction.guild_id} ({length} in queue)")
        await interaction.followup.send(f"✅ Added **{track.display()}** (position {length})", ephemeral=True)

        if manager.state is PlaybackState.IDLE and manager.current_index == -1 and not manager.is_transitioning:
            await manager.play(length - 1)

    @app_commands.command(name="pause", description="Pause the current song")
    async def pause(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        if session.manager.pause():
            session.touch()
            await interaction.response.send_message("⏸️ Paused")
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @app_commands.command(name="resume", description="Resume the paused song")
    async def resume(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        if session.manager.resume():
            session.touch()
            await interaction.response.send_message("▶️ Resumed")
        else:
            await interaction.response.send_message("❌ Nothing is paused", ephemeral=True)

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        if session.manager.current_track is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        await interaction.response.defer()
        session.touch()
        if await session.manager.skip():
            await interaction.followup.send("⏭️ Skipped!")
        else:
            await interaction.followup.send("⏳ Still switching tracks, try again in a moment", ephemeral=True)

    @app_commands.command(name="stop", description="Stop playback (the queue is kept)")
    async def stop(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        await session.manager.stop()
        session.touch()
        await interaction.response.send_message("⏹️ Stopped")

    @app_commands.command(name="queue", description="Show the current queue")
    async def queue(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        manager = session.manager
        if not manager.tracks:
            await interaction.response.send_message("Queue is empty", ephemeral=True)
            return

        lines = []
        for i, track in enumerate(manager.tracks[:QUEUE_PAGE_SIZE], 1):
            marker = "▶️" if i - 1 == manager.current_index else f"{i}."
            lines.append(f"{marker} **{track.title}** - {track.author}")
        if manager.queue_length > QUEUE_PAGE_SIZE:
            lines.append(f"...and {manager.queue_length - QUEUE_PAGE_SIZE} more")
        lines.append(
            f"Loop: {manager.loop_mode.value} | Autoplay: {'on' if manager.autoplay else 'off'}"
            f" | Volume: {manager.volume}%"
        )
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @app_commands.command(name="remove", description="Remove a song from the queue")
    @app_commands.describe(position="Queue position (1 = first)")
    async def remove(self, interaction: discord.Interaction, position: int):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        try:
            track = session.manager.remove(position - 1)
        except IndexError:
            await interaction.response.send_message("❌ No song at that position", ephemeral=True)
            return
        await interaction.response.send_message(f"🗑️ Removed **{track.display()}**", ephemeral=True)

    @app_commands.command(name="move", description="Move a song to another queue position")
    @app_commands.describe(source="Current position", destination="New position")
    async def move(self, interaction: discord.Interaction, source: int, destination: int):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        try:
            session.manager.move(source - 1, destination - 1)
        except IndexError:
            await interaction.response.send_message("❌ Invalid position", ephemeral=True)
            return
        await interaction.response.send_message(f"↕️ Moved song {source} to {destination}", ephemeral=True)

    @app_commands.command(name="shuffle", description="Shuffle the upcoming songs")
    async def shuffle(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        session.manager.shuffle()
        await interaction.response.send_message("🔀 Shuffled!", ephemeral=True)

    @app_commands.command(name="clear", description="Clear the queue (DJ only)")
    @app_commands.default_permissions(manage_channels=True)
    async def clear(self, interaction: discord.Interaction):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        await session.manager.clear()
        await interaction.response.send_message("🗑️ Queue cleared!", ephemeral=True)

    @app_commands.command(name="loop", description="Set the loop mode")
    @app_commands.choices(mode=[
        app_commands.Choice(name="Off", value=LoopMode.OFF.value),
        app_commands.Choice(name="Track", value=LoopMode.TRACK.value),
        app_commands.Choice(name="Queue", value=LoopMode.QUEUE.value),
    ])
    async def loop(self, interaction: discord.Interaction, mode: app_commands.Choice[str]):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        session.manager.set_loop_mode(mode.value)
        await interaction.response.send_message(f"🔁 Loop mode: {mode.name}")

    @app_commands.command(name="volume", description="Set the playback volume")
    @app_commands.describe(level="Volume from 0 to 100")
    async def volume(self, interaction: discord.Interaction, level: app_commands.Range[int, 0, 100]):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        applied = session.manager.set_volume(level)
        await interaction.response.send_message(f"🔊 Volume set to {applied}%")

    @app_commands.command(name="autoplay", description="Toggle autoplay/discovery mode")
    @app_commands.describe(enabled="Enable or disable autoplay")
    async def autoplay(self, interaction: discord.Interaction, enabled: bool):
        session = await self.get_session(interaction.guild_id, self._voice_channel_id(interaction))
        session.manager.set_autoplay(enabled)
        msg = "✅ Autoplay enabled!" if enabled else "❌ Autoplay disabled!"
        await interaction.response.send_message(msg)

    # ==================== IDLE HANDLING ====================

    async def _idle_check_loop(self):
        """Check for idle sessions and disconnect."""
        while True:
            await asyncio.sleep(self.IDLE_CHECK_INTERVAL)

            now = datetime.now(UTC)
            for guild_id, session in list(self.sessions.items()):
                voice_client = session.sink.voice_client
                if not voice_client or not voice_client.is_connected():
                    continue
                if session.manager.state in (PlaybackState.PLAYING, PlaybackState.BUFFERING):
                    session.touch()
                    continue
                if (now - session.last_activity).total_seconds() > config.IDLE_TIMEOUT:
                    await self._disconnect(guild_id, session, "inactivity")

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Leave when everyone else has left the channel."""
        if member.bot:
            return

        session = self.sessions.get(member.guild.id)
        if not session or not session.sink.voice_client or not session.sink.voice_client.channel:
            return

        members = [m for m in session.sink.voice_client.channel.members if not m.bot]
        if not members:
            await self._disconnect(member.guild.id, session, "everyone left")


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))

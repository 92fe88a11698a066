"""
Encore Discord Music Bot - Main Entry Point
"""
import asyncio
import logging
import os
from datetime import datetime, UTC

import discord
from discord.ext import commands

from encore.config import config
from encore.context import EncoreContext

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("discord.gateway").setLevel(logging.WARNING)
logger = logging.getLogger("bot")

EXTENSIONS = ("encore.cogs.music",)


class EncoreBot(commands.Bot):
    """Discord music bot backed by the Encore playback core."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, we use slash commands
            intents=intents,
            help_command=None,
        )

        # Will be initialized in setup_hook
        self.context: EncoreContext | None = None
        self.start_time = datetime.now(UTC)

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        self.context = await EncoreContext.create(config)
        self.context.start()
        logger.info(f"Services initialized (database at {config.DATABASE_PATH})")

        for extension in EXTENSIONS:
            await self.load_extension(extension)
            logger.info(f"Loaded cog: {extension}")

        # Sync slash commands
        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(type=discord.ActivityType.listening, name="/play")
        await self.change_presence(activity=activity)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        logger.info(f"Joined guild: {guild.name} (ID: {guild.id})")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        logger.info(f"Left guild: {guild.name} (ID: {guild.id})")

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Unloading the music cog flushes queue snapshots and stops ffmpeg
        for extension in EXTENSIONS:
            if extension in self.extensions:
                try:
                    await self.unload_extension(extension)
                except commands.ExtensionError as e:
                    logger.error(f"Failed to unload {extension}: {e}")

        for vc in list(self.voice_clients):
            try:
                await vc.disconnect(force=True)
            except discord.DiscordException as e:
                logger.warning(f"Voice disconnect failed: {e}")

        if self.context:
            await self.context.close()
            self.context = None

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    if not config.DISCORD_TOKEN:
        raise RuntimeError("DISCORD_TOKEN is not set")

    bot = EncoreBot()
    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        finally:
            if not bot.is_closed():
                await bot.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()

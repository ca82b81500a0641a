import asyncio
import logging

import discord
from discord import app_commands
from discord.ext import commands

from fear_bot.config import (
    DISCORD_TOKEN,
    DISCORD_CHANNEL_ID as CHANNEL_ID,
    LIST_CHECK_INTERVAL_HOURS,
    SERVERS_CHECK_INTERVAL_MINUTES,
    PLAYER_THRESHOLD,
    QUERY_TIMEOUT_MS,
    SERVER_LIST_URL,
    SERVER_LIST_FILE,
)
from fear_bot.fear_query import query
from fear_bot.monitor import ServerMonitor

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('fear_bot.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger('fear_bot')

DEFAULT_GAME_PORT = 27888


class FearMonitorBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)

        self.monitor = ServerMonitor(
            channel=None,
            player_threshold=PLAYER_THRESHOLD,
            server_list_url=SERVER_LIST_URL,
            server_list_path=SERVER_LIST_FILE,
            query_timeout_ms=QUERY_TIMEOUT_MS,
        )
        self.list_task = None
        self.check_task = None

    async def setup_hook(self):
        self.list_task = self.loop.create_task(self.refresh_server_list_loop())
        self.check_task = self.loop.create_task(self.check_servers_loop())

    async def on_ready(self):
        logger.info(f'{self.user} has connected to Discord!')
        await self.change_presence(activity=discord.Activity(
            type=discord.ActivityType.watching, name="F.E.A.R."
        ))
        await self.tree.sync()

    async def resolve_channel(self):
        """通知先チャンネルを取得する"""
        if self.monitor.channel is not None:
            return self.monitor.channel
        channel = self.get_channel(CHANNEL_ID)
        if channel is None:
            try:
                channel = await self.fetch_channel(CHANNEL_ID)
            except discord.HTTPException as e:
                logger.error(f"No channel found with ID {CHANNEL_ID}: {e}")
                return None
        self.monitor.channel = channel
        return channel

    async def refresh_server_list_loop(self):
        """サーバー一覧を定期的に再取得する"""
        await self.wait_until_ready()
        while not self.is_closed():
            try:
                updated = await self.monitor.update_server_list()
                # ダウンロードできなければ保存済みの一覧を使う
                if not updated and not self.monitor.servers:
                    self.monitor.load_server_list()
            except Exception as e:
                logger.exception(f"Error in scheduled task to update list: {e}")
            await asyncio.sleep(LIST_CHECK_INTERVAL_HOURS * 3600)

    async def check_servers_loop(self):
        """全サーバーを定期的に確認する"""
        await self.wait_until_ready()
        if await self.resolve_channel() is None:
            await self.close()
            return

        await asyncio.sleep(60)
        while not self.is_closed():
            try:
                await self.monitor.check_all_servers()
            except Exception as e:
                logger.exception(f"Error in scheduled task for checking servers: {e}")
            await asyncio.sleep(SERVERS_CHECK_INTERVAL_MINUTES * 60)


def format_active_servers(monitor: ServerMonitor) -> str:
    entries = monitor.active_servers()
    if not entries:
        return f"No servers with at least {monitor.player_threshold} players right now."

    lines = [f"**Active servers ({len(entries)}):**"]
    for name, key, info in entries:
        lines.append(f"- {name} ({key}) {info.last_player_count} players on {info.last_map}")
    return "\n".join(lines)


bot = FearMonitorBot()


@bot.tree.command(name="servers", description="Show servers that are currently announced")
async def servers_command(interaction: discord.Interaction):
    await interaction.response.send_message(format_active_servers(bot.monitor))


@bot.tree.command(name="query", description="Query a single F.E.A.R. server")
@app_commands.describe(host="Server IP address", port="Query port")
async def query_command(interaction: discord.Interaction, host: str, port: int = DEFAULT_GAME_PORT):
    await interaction.response.defer(thinking=True)
    status = await asyncio.to_thread(query, host, port, QUERY_TIMEOUT_MS)
    if status.online:
        await interaction.followup.send(f"**{status.server_name}** ({host}:{port})\n{status}")
    else:
        await interaction.followup.send(f"{host}:{port} is offline: {status.error or 'no response'}")


@bot.tree.command(name="refresh", description="Download the server list again")
async def refresh_command(interaction: discord.Interaction):
    await interaction.response.defer(thinking=True)
    if await bot.monitor.update_server_list():
        await interaction.followup.send(f"Server list updated: {len(bot.monitor.servers)} servers.")
    else:
        await interaction.followup.send("Failed to update the server list.")


def main():
    bot.run(DISCORD_TOKEN, log_handler=None)


if __name__ == "__main__":
    main()

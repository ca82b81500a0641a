import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import discord

from fear_bot.fear_query import ServerStatus, query
from fear_bot.server_list import (
    FearServer,
    fetch_and_save_server_list,
    load_server_list,
)

logger = logging.getLogger('fear_bot')


@dataclass
class ServerMessageInfo:
    message_id: int
    last_content: str
    last_map: str
    last_player_count: int


class MessageCache:
    """サーバーごとに投稿済みメッセージを覚えておく"""

    def __init__(self):
        self._messages: Dict[str, ServerMessageInfo] = {}

    def get(self, key: str) -> Optional[ServerMessageInfo]:
        return self._messages.get(key)

    def put(self, key: str, info: ServerMessageInfo) -> None:
        self._messages[key] = info

    def remove(self, key: str) -> None:
        self._messages.pop(key, None)

    def items(self):
        return list(self._messages.items())

    def __contains__(self, key: str) -> bool:
        return key in self._messages

    def __len__(self) -> int:
        return len(self._messages)


def create_server_message(server: FearServer, status: ServerStatus) -> str:
    return (
        "**🎮 ACTIVE SERVER!**\n"
        f"\n**Name:** {server.name}\n"
        f"**IP:** {server.ip}:{server.port}\n"
        f"**Map:** {status.map}\n"
        f"**Players:** {status.current_players}/{status.max_players}\n"
        f"**Gamemode:** {status.game_type}\n"
        "\n**Join the server!** 🚀"
    )


class ServerMonitor:
    def __init__(self, channel, player_threshold: int, server_list_url: str,
                 server_list_path: str, query_timeout_ms: int = 5000,
                 pause_seconds: float = 0.1):
        self.channel = channel
        self.player_threshold = player_threshold
        self.server_list_url = server_list_url
        self.server_list_path = server_list_path
        self.query_timeout_ms = query_timeout_ms
        self.pause_seconds = pause_seconds

        self.servers: List[FearServer] = []
        self.messages = MessageCache()
        self._servers_by_key: Dict[str, FearServer] = {}

    def load_server_list(self):
        """保存済みのサーバー一覧を読み込む"""
        servers = load_server_list(self.server_list_path)
        if not servers:
            logger.warning("The saved server list is missing or empty.")
            return False

        self._set_servers(servers)
        logger.info(f"Loaded {len(self.servers)} servers from file.")
        return True

    async def update_server_list(self):
        """サーバー一覧を再取得する。失敗した場合は今の一覧をそのまま使う"""
        logger.info("Updating the server list...")
        success = await fetch_and_save_server_list(self.server_list_url, self.server_list_path)
        if not success:
            logger.error("Failed to update the server list.")
            return False

        self._set_servers(load_server_list(self.server_list_path))
        logger.info(f"Server list updated. Loaded {len(self.servers)} servers.")
        return True

    def _set_servers(self, servers: List[FearServer]):
        self.servers = servers
        self._servers_by_key = {s.key: s for s in servers}

    def active_servers(self):
        """告知中のサーバーと最後に投稿した内容"""
        result = []
        for key, info in self.messages.items():
            server = self._servers_by_key.get(key)
            name = server.name if server else key
            result.append((name, key, info))
        return result

    async def check_all_servers(self):
        summary = {'total': len(self.servers), 'active': 0, 'with_players': 0}
        if not self.servers:
            logger.info("The server list is empty. Skipping checking.")
            return summary

        logger.info(f"Checking {len(self.servers)} servers...")

        for server in list(self.servers):
            try:
                status = await asyncio.to_thread(
                    query, server.ip, server.port, self.query_timeout_ms
                )
                if status.online:
                    summary['active'] += 1
                    if status.current_players >= self.player_threshold:
                        summary['with_players'] += 1
                await self.handle_status(server, status)
            except Exception as e:
                logger.error(f"Error while checking the server {server.key} ({server.name}): {e}")
                info = self.messages.get(server.key)
                if info is not None:
                    await self.delete_message(server.key, info.message_id)

            if self.pause_seconds:
                await asyncio.sleep(self.pause_seconds)

        logger.info(f"Checking complete. Active servers: {summary['active']}/{summary['total']}")
        return summary

    async def handle_status(self, server: FearServer, status: ServerStatus):
        """1サーバー分の結果に応じてメッセージを投稿・更新・削除する"""
        key = server.key
        info = self.messages.get(key)

        if not status.online:
            logger.info(f"Server OFFLINE: {server.name} ({key})")
            if info is not None:
                await self.delete_message(key, info.message_id)
            return

        logger.info(
            f"Server ONLINE: {server.name} ({key}) "
            f"Players: {status.current_players}/{status.max_players} Map: {status.map}"
        )

        if status.current_players < self.player_threshold:
            if info is not None:
                logger.info(f"  -> Not enough players ({status.current_players} < {self.player_threshold}), deleting the message")
                await self.delete_message(key, info.message_id)
            return

        if info is None:
            await self.send_new_message(server, status)
        elif status.map != info.last_map or status.current_players != info.last_player_count:
            await self.update_existing_message(server, status, info)

    async def send_new_message(self, server: FearServer, status: ServerStatus):
        content = create_server_message(server, status)
        try:
            message = await self.channel.send(content)
        except discord.HTTPException as e:
            logger.error(f"  -> Error sending new message: {e}")
            return

        self.messages.put(server.key, ServerMessageInfo(
            message_id=message.id,
            last_content=content,
            last_map=status.map,
            last_player_count=status.current_players,
        ))
        logger.info(f"  -> A new message has been sent (ID: {message.id})")

    async def update_existing_message(self, server: FearServer, status: ServerStatus,
                                      info: ServerMessageInfo):
        content = create_server_message(server, status)
        try:
            message = await self.channel.fetch_message(info.message_id)
            await message.edit(content=content)
        except discord.HTTPException as e:
            # 消されたメッセージは作り直す
            logger.error(f"  -> Could not update message {info.message_id}: {e}")
            self.messages.remove(server.key)
            await self.send_new_message(server, status)
            return

        info.last_content = content
        info.last_map = status.map
        info.last_player_count = status.current_players
        logger.info(f"  -> Message updated (ID: {info.message_id})")

    async def delete_message(self, key: str, message_id: int):
        try:
            message = await self.channel.fetch_message(message_id)
            await message.delete()
            logger.info(f"  -> Message has been deleted (ID: {message_id})")
        except discord.NotFound:
            logger.error("  -> No messages found to delete")
        except discord.HTTPException as e:
            logger.error(f"  -> Error while deleting message: {e}")
        finally:
            self.messages.remove(key)

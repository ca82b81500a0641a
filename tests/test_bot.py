import asyncio

import pytest
from unittest.mock import Mock, AsyncMock, patch

from fear_bot.fear_query import ServerStatus
from fear_bot.monitor import ServerMessageInfo
from fear_bot.server_list import FearServer, load_server_list, save_server_list


@pytest.fixture
def bot_module(monkeypatch, tmp_path):
    """テスト用にボットのモジュールを読み込む"""
    monkeypatch.setenv('DISCORD_TOKEN', 'test-token')
    monkeypatch.setenv('DISCORD_CHANNEL_ID', '42')
    monkeypatch.chdir(tmp_path)
    from fear_bot import bot
    return bot


def test_commands_registered(bot_module):
    names = {command.name for command in bot_module.bot.tree.get_commands()}
    assert {'servers', 'query', 'refresh'} <= names


def test_format_active_servers(bot_module):
    monitor = bot_module.bot.monitor
    assert "No servers with at least" in bot_module.format_active_servers(monitor)

    monitor.messages.put('1.2.3.4:27888', ServerMessageInfo(1, "x", 'DM_Factory', 5))
    try:
        text = bot_module.format_active_servers(monitor)
    finally:
        monitor.messages.remove('1.2.3.4:27888')

    assert "Active servers (1)" in text
    assert "1.2.3.4:27888" in text
    assert "5 players on DM_Factory" in text


@pytest.mark.asyncio
async def test_query_command_reports_status(bot_module):
    """/query コマンドの応答"""
    interaction = Mock()
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    status = ServerStatus(online=True, server_name='Slow-Mo Arena', map='DM_Factory',
                          max_players=16, current_players=2, ping_ms=12)

    with patch('fear_bot.bot.query', return_value=status):
        await bot_module.query_command.callback(interaction, '1.2.3.4', 27888)

    interaction.followup.send.assert_called_once_with(
        "**Slow-Mo Arena** (1.2.3.4:27888)\n2/16 players on DM_Factory (ping: 12ms)"
    )


@pytest.mark.asyncio
async def test_query_command_offline(bot_module):
    interaction = Mock()
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()

    with patch('fear_bot.bot.query', return_value=ServerStatus(error="Timeout receiving details")):
        await bot_module.query_command.callback(interaction, '1.2.3.4', 27888)

    interaction.followup.send.assert_called_once_with(
        "1.2.3.4:27888 is offline: Timeout receiving details"
    )


async def run_first_refresh(bot_module, monkeypatch, tmp_path, downloaded):
    """一覧更新ループを最初の待機まで動かす"""
    bot = bot_module.bot
    monkeypatch.setattr(bot.monitor, 'server_list_path', str(tmp_path / "servers.json"))
    monkeypatch.setattr(bot.monitor, 'servers', [])
    monkeypatch.setattr(bot.monitor, '_servers_by_key', {})
    monkeypatch.setattr(bot, 'wait_until_ready', AsyncMock())

    async def fake_download(url, path):
        if downloaded is None:
            return False
        save_server_list(downloaded, path)
        return True

    fetch = AsyncMock(side_effect=fake_download)
    sleep = AsyncMock(side_effect=asyncio.CancelledError)
    with patch('fear_bot.monitor.fetch_and_save_server_list', new=fetch), \
            patch('fear_bot.bot.asyncio.sleep', new=sleep):
        with pytest.raises(asyncio.CancelledError):
            await bot.refresh_server_list_loop()

    sleep.assert_called_once_with(bot_module.LIST_CHECK_INTERVAL_HOURS * 3600)
    return fetch


@pytest.mark.asyncio
async def test_refresh_downloads_before_first_sleep(bot_module, monkeypatch, tmp_path):
    """起動直後に一覧をダウンロードする"""
    stale = FearServer('10.0.0.1', 27888, 'Stale')
    fresh = FearServer('10.0.0.2', 27888, 'Fresh')
    save_server_list([stale], str(tmp_path / "servers.json"))

    fetch = await run_first_refresh(bot_module, monkeypatch, tmp_path, [fresh])

    fetch.assert_called_once()
    assert bot_module.bot.monitor.servers == [fresh]
    assert load_server_list(str(tmp_path / "servers.json")) == [fresh]


@pytest.mark.asyncio
async def test_refresh_falls_back_to_saved_list(bot_module, monkeypatch, tmp_path):
    """ダウンロードに失敗したら保存済みの一覧を使う"""
    stale = FearServer('10.0.0.1', 27888, 'Stale')
    save_server_list([stale], str(tmp_path / "servers.json"))

    fetch = await run_first_refresh(bot_module, monkeypatch, tmp_path, None)

    fetch.assert_called_once()
    assert bot_module.bot.monitor.servers == [stale]

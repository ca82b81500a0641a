import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, asdict
from html.parser import HTMLParser
from typing import List, Dict, Any

import aiohttp

logger = logging.getLogger('fear_bot')

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
IPV4_PATTERN = re.compile(r'^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$')


@dataclass
class FearServer:
    ip: str
    port: int
    name: str = ""
    admin: str = ""
    version: str = ""

    @property
    def key(self) -> str:
        return f"{self.ip}:{self.port}"

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FearServer":
        return FearServer(
            ip=str(d.get("ip", "")).strip(),
            port=int(d.get("port", 0)),
            name=str(d.get("name", "")),
            admin=str(d.get("admin", "")),
            version=str(d.get("version", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _TableParser(HTMLParser):
    """最初の<table>の行を<td>のテキストのリストとして集める"""

    def __init__(self):
        super().__init__()
        self.rows: List[List[str]] = []
        self._table_depth = 0
        self._done = False
        self._row = None
        self._cell = None

    def handle_starttag(self, tag, attrs):
        if self._done:
            return
        if tag == 'table':
            self._table_depth += 1
        elif self._table_depth == 1 and tag == 'tr':
            self._row = []
        elif self._table_depth == 1 and tag == 'td' and self._row is not None:
            self._cell = []

    def handle_endtag(self, tag):
        if self._done:
            return
        if tag == 'table':
            self._table_depth -= 1
            if self._table_depth == 0:
                self._done = True
        elif self._table_depth == 1 and tag == 'td':
            self._close_cell()
        elif self._table_depth == 1 and tag == 'tr':
            self._close_cell()
            if self._row is not None:
                self.rows.append(self._row)
            self._row = None

    def handle_data(self, data):
        if self._cell is not None:
            self._cell.append(data)

    def _close_cell(self):
        if self._cell is not None and self._row is not None:
            # HTMLの空白は1つにまとめる
            self._row.append(" ".join("".join(self._cell).split()))
        self._cell = None


def parse_server_list(html: str) -> List[FearServer]:
    """サーバー一覧ページのHTMLからサーバーを取り出す"""
    parser = _TableParser()
    parser.feed(html)
    parser.close()

    servers: List[FearServer] = []
    if not parser.rows:
        logger.error("No table found on the page.")
        return servers

    # 1行目はヘッダー
    for i, cells in enumerate(parser.rows[1:], start=1):
        if len(cells) < 6:
            continue

        ip = cells[1].strip()
        port_text = re.sub(r'[^0-9]', '', cells[2])
        if not port_text:
            continue

        if not IPV4_PATTERN.match(ip):
            logger.warning(f"Row {i} skipped, invalid IP address: {ip}")
            continue

        servers.append(FearServer(
            ip=ip,
            port=int(port_text),
            name=cells[3].strip(),
            admin=cells[4].strip(),
            version=cells[5].strip(),
        ))

    logger.info(f"Total servers found: {len(servers)}")
    return servers


async def fetch_server_list(url: str, timeout: float = 10) -> List[FearServer]:
    """サーバー一覧ページをダウンロードして解析する"""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url, headers={'User-Agent': USER_AGENT}) as response:
            response.raise_for_status()
            html = await response.text()
    return parse_server_list(html)


def save_server_list(servers: List[FearServer], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump([s.to_dict() for s in servers], f, indent=2, ensure_ascii=False)


def load_server_list(path: str) -> List[FearServer]:
    if not os.path.exists(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):
            return []
        return [FearServer.from_dict(item) for item in data if isinstance(item, dict)]
    except (OSError, ValueError) as e:
        logger.error(f"Error loading server list: {e}")
        return []


async def fetch_and_save_server_list(url: str, path: str) -> bool:
    """サーバー一覧を取得してJSONに保存する。失敗したら False"""
    logger.info(f"Downloading the list of servers from: {url}")
    try:
        servers = await fetch_server_list(url)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Error while downloading the server list: {e}")
        return False

    if not servers:
        logger.warning("No server data found in response.")
        return False

    try:
        save_server_list(servers, path)
    except OSError as e:
        logger.error(f"Error while saving the server list: {e}")
        return False

    logger.info(f"Found {len(servers)} servers, saved to {path}")
    return True

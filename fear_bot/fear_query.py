import logging
import re
import socket
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger('fear_bot')

# FE FD = マジックバイト, 00 = クエリ種別, 続く4バイトはセッショントークン
PACKET_DETAILS = b'\xFE\xFD\x00\x43\x4F\x52\x59\xFF\x00\x00'
PACKET_PLAYERS = b'\xFE\xFD\x00\x43\x4F\x52\x58\x00\xFF\xFF'

DETAILS_PREAMBLE = b'\x00CORY'
PLAYERS_PREAMBLE = b'\x00CORX'

BUFFER_SIZE = 4096
DETAILS_TIMEOUT_MESSAGE = "Timeout receiving details"

_INT_PATTERN = re.compile(r'[+-]?[0-9]+')
_INT_MAX = 2 ** 31 - 1
_INT_MIN = -(2 ** 31)

PlayerRecord = Dict[str, str]


@dataclass(frozen=True)
class ServerStatus:
    online: bool = False
    server_name: str = "Unknown"
    map: str = "Unknown"
    game_version: str = "Unknown"
    game_type: str = "Unknown"
    max_players: int = 0
    current_players: int = 0
    ping_ms: int = -1
    error: str = ""
    player_list: Tuple[PlayerRecord, ...] = ()

    def __str__(self):
        if not self.online:
            return "Offline"

        text = f"{self.current_players}/{self.max_players} players on {self.map}"
        if self.ping_ms > 0:
            text += f" (ping: {self.ping_ms}ms)"

        if self.player_list:
            names = [
                player.get('playername', player.get('name', "Unknown"))
                for player in self.player_list
            ]
            text += "\nPlayers: " + ", ".join(names)

        return text


def recode_text(raw: bytes) -> str:
    """Latin-1として読んだ文字列を、UTF-8として読み直せる場合は読み直す

    サーバーはUTF-8の文字列をLatin-1としてそのまま送ってくることが多い。
    UTF-8として不正なバイト列なら、Latin-1で読んだ文字列をそのまま返す。
    """
    text = raw.decode('latin-1')
    try:
        return text.encode('latin-1').decode('utf-8')
    except UnicodeError:
        return text


def _read_cstring(data: bytes, pos: int, length: int) -> Tuple[Optional[bytes], int]:
    """posからNUL終端の文字列を読む。終端が無ければ (None, length) を返す"""
    end = data.find(b'\x00', pos, length)
    if end < 0:
        return None, length
    return data[pos:end], end + 1


def parse_details_response(data: bytes, length: Optional[int] = None) -> Dict[str, str]:
    """詳細レスポンスを key/value の辞書にする。壊れたデータでも例外は出さない"""
    if length is None:
        length = len(data)
    length = min(length, len(data))

    result: Dict[str, str] = {}
    if length < 5:
        return result
    if data[:5] != DETAILS_PREAMBLE:
        return result

    pos = 5
    while pos < length:
        # 空のキーはペアリストの終端
        if data[pos] == 0:
            break

        key, pos = _read_cstring(data, pos, length)
        if key is None:
            break
        value, pos = _read_cstring(data, pos, length)
        if value is None:
            break

        key_text = recode_text(key)
        if key_text:
            result[key_text.lower()] = recode_text(value)

    return result


def parse_players_response(data: bytes, length: Optional[int] = None,
                           players: Optional[List[PlayerRecord]] = None) -> List[PlayerRecord]:
    """プレイヤー一覧レスポンスを解析して players に追加する

    途中でバッファが尽きた場合は、それまでに読めた完全なレコードだけを残す。
    """
    if players is None:
        players = []
    if length is None:
        length = len(data)
    length = min(length, len(data))

    if length < 6:
        return players
    if data[:5] != PLAYERS_PREAMBLE:
        return players

    pos = 5
    if data[pos] == 0:
        pos += 1
    if pos >= length:
        return players

    num_players = data[pos]
    pos += 1

    fields: List[str] = []
    while pos < length and data[pos] != 0:
        name, pos = _read_cstring(data, pos, length)
        if name is None:
            break
        fields.append(recode_text(name))

    if pos < length and data[pos] == 0:
        pos += 1

    if not fields:
        return players

    for _ in range(num_players):
        if pos >= length:
            break

        record: PlayerRecord = {}
        complete = True
        for field_name in fields:
            value, pos = _read_cstring(data, pos, length)
            if value is None:
                complete = False
                break
            record[field_name] = recode_text(value)

        if not complete:
            break
        if record:
            players.append(record)

    return players


def _parse_int(value: Optional[str]) -> int:
    if value is None or not _INT_PATTERN.fullmatch(value):
        return 0
    number = int(value)
    if number < _INT_MIN or number > _INT_MAX:
        return 0
    return max(number, 0)


def status_from_details(details: Dict[str, str]) -> dict:
    """詳細の辞書から ServerStatus のフィールドを取り出す"""
    return {
        'server_name': details.get('hostname', "Unknown"),
        'map': details.get('mapname', "Unknown"),
        'game_version': details.get('gamever', details.get('version', "Unknown")),
        'game_type': details.get('gametype', "Unknown"),
        'max_players': _parse_int(details.get('maxplayers', "0")),
        'current_players': _parse_int(details.get('numplayers', "0")),
    }


def send_and_receive(sock: socket.socket, address: str, port: int,
                     payload: bytes, timeout_ms: float) -> Tuple[bytes, float]:
    """1つのデータグラムを送信し、応答を1つだけ待つ

    戻り値は (受信データ, 送信からの経過ミリ秒)。タイムアウト時は
    socket.timeout、それ以外のI/Oエラーは OSError をそのまま送出する。
    """
    sock.settimeout(timeout_ms / 1000)
    started = time.perf_counter()
    sock.sendto(payload, (address, port))
    data, _ = sock.recvfrom(BUFFER_SIZE)
    return data, (time.perf_counter() - started) * 1000


def _query_players(sock: socket.socket, address: str, port: int,
                   timeout_ms: float) -> List[PlayerRecord]:
    players: List[PlayerRecord] = []
    try:
        data, _ = send_and_receive(sock, address, port, PACKET_PLAYERS, timeout_ms)
    except socket.timeout:
        logger.warning("Player query timeout (normal for some servers)")
        return players
    except OSError as e:
        logger.warning(f"Player query failed: {e}")
        return players

    return parse_players_response(data, len(data), players)


def query(address: str, port: int, timeout_ms: int = 5000) -> ServerStatus:
    """サーバーに詳細とプレイヤー一覧を問い合わせる

    詳細の応答が無ければオフライン扱い。プレイヤー一覧の失敗は無視して
    詳細の結果だけを返す。
    """
    if timeout_ms <= 0:
        raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            try:
                data, elapsed = send_and_receive(sock, address, port, PACKET_DETAILS, timeout_ms)
            except socket.timeout:
                return ServerStatus(error=DETAILS_TIMEOUT_MESSAGE)

            fields = status_from_details(parse_details_response(data, len(data)))
            players: List[PlayerRecord] = []
            if fields['current_players'] > 0:
                players = _query_players(sock, address, port, timeout_ms / 2)

            return ServerStatus(
                online=True,
                ping_ms=int(elapsed),
                player_list=tuple(players),
                **fields,
            )
    except OSError as e:
        return ServerStatus(error=str(e) or e.__class__.__name__)

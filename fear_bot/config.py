import os
from dotenv import load_dotenv

load_dotenv()

def get_env_or_raise(key: str) -> str:
    """環境変数を取得し、存在しない場合は例外を発生させる"""
    value = os.getenv(key)
    if value is None:
        raise ValueError(f"Environment variable {key} is not set")
    return value

def get_env_int(key: str, default: int) -> int:
    """整数の環境変数を取得する。未設定ならデフォルト値"""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be an integer, got {value!r}")

# 文字列として読み込むもの
DISCORD_TOKEN = get_env_or_raise('DISCORD_TOKEN')
SERVER_LIST_URL = os.getenv('SERVER_LIST_URL', 'https://fear-community.org/api/serverlistmanager/index.php')
SERVER_LIST_FILE = os.getenv('SERVER_LIST_FILE', 'fear_server_list.json')

# Snowflake ID
DISCORD_CHANNEL_ID = int(get_env_or_raise('DISCORD_CHANNEL_ID'))

# 数値
LIST_CHECK_INTERVAL_HOURS = get_env_int('LIST_CHECK_INTERVAL_HOURS', 24)
SERVERS_CHECK_INTERVAL_MINUTES = get_env_int('SERVERS_CHECK_INTERVAL_MINUTES', 2)
PLAYER_THRESHOLD = get_env_int('PLAYER_THRESHOLD', 3)
QUERY_TIMEOUT_MS = get_env_int('QUERY_TIMEOUT_MS', 5000)

"""
supportchat Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# Local profile database (guest session token lives here)
_repo_default_db = BASE_DIR / "data" / "profile.db"
_user_default_db = Path.home() / ".supportchat" / "profile.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("SUPPORTCHAT_PROFILE_DB"):
    PROFILE_DB_PATH = os.getenv("SUPPORTCHAT_PROFILE_DB")
elif _repo_default_db.parent.exists():
    PROFILE_DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    PROFILE_DB_PATH = str(_user_default_db)

# Backend endpoints
API_URL = os.getenv("SUPPORTCHAT_API_URL", config_data.get("API_URL", "http://localhost:5000/api"))
SOCKET_URL = os.getenv("SUPPORTCHAT_SOCKET_URL", config_data.get("SOCKET_URL", "ws://localhost:5000/ws"))
# Attachment paths are server-relative; callers prefix them with BASE_URL
BASE_URL = os.getenv("SUPPORTCHAT_BASE_URL", config_data.get("BASE_URL", "http://localhost:5000"))

# REST timeout (seconds)
REQUEST_TIMEOUT = float(os.getenv("SUPPORTCHAT_REQUEST_TIMEOUT", config_data.get("REQUEST_TIMEOUT", "30")))

# Attachment ceiling, checked before upload
MAX_ATTACHMENT_BYTES = int(os.getenv("SUPPORTCHAT_MAX_ATTACHMENT_BYTES", config_data.get("MAX_ATTACHMENT_BYTES", str(5 * 1024 * 1024))))

# Typing indicator expiry (seconds). 0 keeps the indicator until a stop signal arrives.
TYPING_TIMEOUT = float(os.getenv("SUPPORTCHAT_TYPING_TIMEOUT", config_data.get("TYPING_TIMEOUT", "8")))

# Sender names that count as an agent being present even on system messages
SYSTEM_AGENT_NAMES = tuple(
    name.strip()
    for name in os.getenv(
        "SUPPORTCHAT_SYSTEM_AGENT_NAMES",
        config_data.get("SYSTEM_AGENT_NAMES", "Admin Runtera,Runtera"),
    ).split(",")
    if name.strip()
)

# Push channel keepalive (seconds) passed to the websocket heartbeat
CHANNEL_HEARTBEAT = float(os.getenv("SUPPORTCHAT_CHANNEL_HEARTBEAT", config_data.get("CHANNEL_HEARTBEAT", "30")))


def get_config_dict():
    return {
        "API_URL": API_URL,
        "SOCKET_URL": SOCKET_URL,
        "BASE_URL": BASE_URL,
        "REQUEST_TIMEOUT": REQUEST_TIMEOUT,
        "MAX_ATTACHMENT_BYTES": MAX_ATTACHMENT_BYTES,
        "TYPING_TIMEOUT": TYPING_TIMEOUT,
        "SYSTEM_AGENT_NAMES": ",".join(SYSTEM_AGENT_NAMES),
    }

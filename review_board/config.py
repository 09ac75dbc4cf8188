"""
CBT Review Board Configuration
"""
import os
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {_config_file}: {e}")


def _setting(env_name: str, key: str, default: str) -> str:
    return os.getenv(env_name, str(config_data.get(key, default)))


# Workflow backend
API_BASE_URL = _setting("REVIEW_BOARD_API_URL", "API_BASE_URL", "http://localhost:8000").rstrip("/")
STREAM_PATH = _setting("REVIEW_BOARD_STREAM_PATH", "STREAM_PATH", "/stream_session_info")

# Timeout for start/resume requests in seconds (0 = no client-side timeout).
# The push stream never carries a client-side timeout.
REQUEST_TIMEOUT = float(_setting("REVIEW_BOARD_REQUEST_TIMEOUT", "REQUEST_TIMEOUT", "0"))

# Explicit stream restarts allowed per thread (0 = unbounded)
MAX_STREAM_RESTARTS = int(_setting("REVIEW_BOARD_MAX_RESTARTS", "MAX_STREAM_RESTARTS", "5"))

DEFAULT_MODEL_CHOICE = _setting("REVIEW_BOARD_MODEL_CHOICE", "MODEL_CHOICE", "openai")

# Workflow stage names reported in `active_node`
REVIEW_NODE = _setting("REVIEW_BOARD_REVIEW_NODE", "REVIEW_NODE", "Critic")
HIL_NODE = _setting("REVIEW_BOARD_HIL_NODE", "HIL_NODE", "HIL_Node")
FINALIZE_NODE = _setting("REVIEW_BOARD_FINALIZE_NODE", "FINALIZE_NODE", "Finalize")
DRAFTING_NODE = _setting("REVIEW_BOARD_DRAFTING_NODE", "DRAFTING_NODE", "Drafting")

# The backend reports its HIL interrupt through the error field as the quoted node name.
INTERRUPT_MARKER = f"'{HIL_NODE}'"

# Development stub backend
STUB_HOST = _setting("REVIEW_BOARD_STUB_HOST", "STUB_HOST", "127.0.0.1")
STUB_PORT = int(_setting("REVIEW_BOARD_STUB_PORT", "STUB_PORT", "8000"))
STUB_STEP_DELAY = float(_setting("REVIEW_BOARD_STUB_STEP_DELAY", "STUB_STEP_DELAY", "1.0"))

CLIENT_VERSION = "0.1.0"


def get_config_dict():
    return {
        "API_BASE_URL": API_BASE_URL,
        "STREAM_PATH": STREAM_PATH,
        "REQUEST_TIMEOUT": REQUEST_TIMEOUT,
        "MAX_STREAM_RESTARTS": MAX_STREAM_RESTARTS,
        "MODEL_CHOICE": DEFAULT_MODEL_CHOICE,
        "REVIEW_NODE": REVIEW_NODE,
        "HIL_NODE": HIL_NODE,
        "FINALIZE_NODE": FINALIZE_NODE,
        "DRAFTING_NODE": DRAFTING_NODE,
        "STUB_HOST": STUB_HOST,
        "STUB_PORT": STUB_PORT,
        "STUB_STEP_DELAY": STUB_STEP_DELAY,
    }

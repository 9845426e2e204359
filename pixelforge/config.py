# pixelforge/config.py

import os
from dotenv import load_dotenv
load_dotenv()

from pydantic import BaseModel, Field

# --- 环境变量名 ---
ENV_MODE = "PIXELFORGE_ENV"
ENV_EDITOR_PORT = "PIXELFORGE_EDITOR_PORT"
ENV_LOG_LEVEL = "LOG_LEVEL"

DEVELOPMENT = "development"
PRODUCTION = "production"

# --- 默认值 ---
DEFAULT_PORT = 8000
RECONNECT_INTERVAL = 1.0
WATCH_DEBOUNCE_MS = 1600
WATCH_STEP_MS = 50
RESTART_GRACE_SECONDS = 5.0
CRASH_LOOP_SECONDS = 2.0
REQUEST_TIMEOUT_SECONDS = 30.0
WORKING_SET_TTL_SECONDS = 10.0
WORKING_SET_FLUSH_INTERVAL = 5.0

BUILD_INFO_FILE = ".pixelforge-build.json"


class Settings(BaseModel):
    """进程级配置。CLI 参数优先，其次是环境变量。"""
    mode: str = DEVELOPMENT
    editor_port: int = DEFAULT_PORT
    reconnect_interval: float = RECONNECT_INTERVAL
    watch_debounce_ms: int = WATCH_DEBOUNCE_MS
    watch_step_ms: int = WATCH_STEP_MS
    restart_grace_seconds: float = RESTART_GRACE_SECONDS
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    extra_env: dict = Field(default_factory=dict)

    @property
    def is_development(self) -> bool:
        return self.mode == DEVELOPMENT

    @classmethod
    def from_env(cls) -> "Settings":
        mode = os.getenv(ENV_MODE, DEVELOPMENT).lower()
        if mode not in (DEVELOPMENT, PRODUCTION):
            mode = DEVELOPMENT
        port = os.getenv(ENV_EDITOR_PORT)
        return cls(
            mode=mode,
            editor_port=int(port) if port and port.isdigit() else DEFAULT_PORT,
        )

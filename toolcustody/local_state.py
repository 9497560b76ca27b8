"""本机持久化的小型 KV：记住的会话、各用户的生物识别登记标记。"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

REMEMBERED_USER_KEY = "remembered_user"
# 记住会话时发给设备的密钥（只存哈希）
DEVICE_SECRET_KEY = "device_secret"


def biometric_key(user_id: str) -> str:
    return f"biometric_{user_id}"


class LocalState:
    def __init__(self, path: Optional[str] = None):
        # path 为空时只放内存（测试用）
        self.path = Path(path) if path else None
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("local state %s unreadable (%s), starting empty", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            logger.error("could not write local state %s: %s", self.path, e)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

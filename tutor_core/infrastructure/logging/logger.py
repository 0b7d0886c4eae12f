import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from tutor_core.config.settings import settings


LOG_FILE_NAME = "relay.log"
REDACT_LIMIT = 64
# 可能包含用户或模型文本的结构化字段
_CONTENT_FIELDS = ("content", "error", "question")


class JsonFormatter(logging.Formatter):
    """每条记录输出一行 JSON：ts/level/name/msg 加上 extra 中的结构化字段。"""

    def __init__(self, redact: bool = False):
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": self._clip(record.getMessage()),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                payload[key] = self._clip(value) if key in _CONTENT_FIELDS else value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

    def _clip(self, value):
        if self._redact and isinstance(value, str):
            return value[:REDACT_LIMIT]
        return value


def setup_logger(name: str = "tutor_core", log_dir: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(settings.log_level.upper())
    if logger.handlers:
        return logger
    path = Path(log_dir or settings.log_dir)
    path.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path / LOG_FILE_NAME, encoding="utf-8")
    fh.setFormatter(JsonFormatter(redact=settings.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()

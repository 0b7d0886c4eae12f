"""Server-Sent-Events 行解码与帧解析。

上游的一条记录可能被拆到多次网络读取中，SSELineDecoder 按行边界缓冲，
只把完整的行交给 parse_frame，避免半行 JSON 污染后续解析。
"""

import json
import re
from dataclasses import dataclass
from typing import List, Literal, Optional

DONE_SENTINEL = "[DONE]"

# 只按 SSE 规定的换行切分，内容中的 \u2028 等字符不算行尾
_LINE_BREAK = re.compile(r"\r\n|\r|\n")

FrameKind = Literal["delta", "done", "error", "skip"]


@dataclass
class Frame:
    kind: FrameKind
    content: str = ""
    error: Optional[str] = None


_SKIP = Frame(kind="skip")


class SSELineDecoder:
    """把任意切分的文本块重组为完整的行（支持 \\n、\\r\\n、\\r）。"""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        if not text:
            return []
        data = self._buffer + text
        # 末尾的 \r 可能是 \r\n 的前半部分，留到下一块再判断
        hold_cr = data.endswith("\r")
        if hold_cr:
            data = data[:-1]
        lines = _LINE_BREAK.split(data)
        self._buffer = lines.pop()
        if hold_cr:
            self._buffer += "\r"
        return lines

    def flush(self) -> List[str]:
        """流结束时返回缓冲区中剩余的最后一行（若有）。"""

        rest = self._buffer.rstrip("\r\n")
        self._buffer = ""
        return [rest] if rest else []


def parse_frame(line: str) -> Frame:
    """解析一行 SSE 数据。

    - "data: [DONE]" -> done
    - "data: {"choices": [{"delta": {"content": ...}}]}" -> delta
    - "data: {"error": {"message": ...}}" -> error
    - 其余（空行、注释、非 data 行、非法 JSON、空增量）-> skip
    """

    if not line.startswith("data:"):
        return _SKIP
    data = line[5:].strip()
    if not data:
        return _SKIP
    if data == DONE_SENTINEL:
        return Frame(kind="done")
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return _SKIP
    if not isinstance(payload, dict):
        return _SKIP

    error = payload.get("error")
    if error:
        if isinstance(error, dict):
            message = error.get("message")
        else:
            message = str(error)
        return Frame(kind="error", error=message or "Upstream API error")

    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return _SKIP
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if not isinstance(content, str) or not content:
        return _SKIP
    return Frame(kind="delta", content=content)

"""提示词变体加载工具。

各个对话入口（普通聊天、题目分析、追问等）只在提示词文本与生成参数上
不同，这些差异以配置数据的形式放在 YAML 文件中（默认 prompts/variants.yaml，
可用 PROMPTS_FILE 指定其他文件），由 PromptRegistry 统一加载。

提示词文本对 Relay 是不透明的，这里只负责模板替换与消息列表拼装。
"""

from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import ValidationError
from tutor_core.domain.models import ChatMessage, RelayOptions


PROMPTS_DIR = Path(__file__).resolve().parent
DEFAULT_PROMPTS_FILE = PROMPTS_DIR / "variants.yaml"


@dataclass
class PromptVariant:
    """一个提示词变体。

    - system_prompt: 作为 system 消息发送的文本，可为空。
    - user_template: 用户消息模板，使用 $name 占位符；为空时直接使用用户输入。
    - max_tokens / temperature: 覆盖默认生成参数。
    - context_window: 拼入的历史消息条数上限，0 表示不带历史。
    - required: 请求必须提供（且非空）的字段，question 指用户输入本身。
    - defaults: 字段缺失或为空时使用的模板取值。
    """

    name: str
    system_prompt: str = ""
    user_template: str = ""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    context_window: int = 10
    stream: bool = True
    required: Tuple[str, ...] = ()
    defaults: Dict[str, str] = field(default_factory=dict)

    def missing_fields(self, user_input: str, fields: Optional[Mapping[str, Any]] = None) -> List[str]:
        """返回缺失的必填字段名（按 required 中的顺序）。"""

        values = dict(fields or {})
        values.setdefault("question", user_input)
        return [name for name in self.required if not _filled(values.get(name))]

    def render_user(self, user_input: str, fields: Optional[Mapping[str, Any]] = None) -> str:
        if not self.user_template:
            return user_input
        values = {k: "" if v is None else str(v) for k, v in (fields or {}).items()}
        values.setdefault("question", user_input)
        for key, default in self.defaults.items():
            if not values.get(key, "").strip():
                values[key] = default
        return Template(self.user_template).safe_substitute(values)

    def build_messages(
        self,
        context: Sequence[ChatMessage],
        user_input: str,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        if self.system_prompt:
            messages.append(ChatMessage(role="system", content=self.system_prompt))
        if self.context_window > 0:
            messages.extend(list(context)[-self.context_window:])
        messages.append(ChatMessage(role="user", content=self.render_user(user_input, fields)))
        return messages

    @property
    def options(self) -> RelayOptions:
        return RelayOptions(max_tokens=self.max_tokens, temperature=self.temperature)


def _filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return True


class PromptRegistry:
    def __init__(self, variants: Mapping[str, PromptVariant]):
        self._variants: Dict[str, PromptVariant] = dict(variants)

    @classmethod
    def from_file(cls, path: str | Path) -> "PromptRegistry":
        path = Path(path).expanduser()
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(code="PROMPTS_READ_ERROR", message=f"{path}: {e}", http_status=500)
        raw_variants = data.get("variants") if isinstance(data, dict) else None
        if not isinstance(raw_variants, dict):
            raise ValidationError(code="PROMPTS_INVALID", message=f"{path}: missing 'variants' mapping", http_status=500)
        variants = {}
        for name, body in raw_variants.items():
            body = dict(body or {})
            variants[name] = PromptVariant(
                name=name,
                system_prompt=body.get("system_prompt") or "",
                user_template=body.get("user_template") or "",
                max_tokens=body.get("max_tokens"),
                temperature=body.get("temperature"),
                context_window=int(body.get("context_window", 10)),
                stream=bool(body.get("stream", True)),
                required=tuple(body.get("required") or ()),
                defaults={k: str(v) for k, v in (body.get("defaults") or {}).items()},
            )
        return cls(variants)

    def get(self, name: str) -> PromptVariant:
        try:
            return self._variants[name]
        except KeyError:
            raise ValidationError(code="UNKNOWN_VARIANT", message=f"Unknown prompt variant: {name!r}", http_status=404)

    def __contains__(self, name: object) -> bool:
        return name in self._variants

    def names(self) -> List[str]:
        return sorted(self._variants)


def load_prompt_registry(path: str | Path | None = None) -> PromptRegistry:
    """按显式路径、PROMPTS_FILE 配置、内置文件的顺序加载提示词变体。"""

    return PromptRegistry.from_file(path or settings.prompts_file or DEFAULT_PROMPTS_FILE)

"""领域层模型与协议。

包含：
- models: 统一的 ChatTurn / ChatMessage / ChatRequest / RelayEvent 模型。
- conversation: ConversationStore 协议与 NO_PERSIST 哨兵。
- exceptions: 业务异常类型定义。
"""

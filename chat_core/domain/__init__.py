"""领域层模型与协议。

包含：
- models: ChatMessage / PromptMessage / SendMessageOptions / BuildResult。
- store: 消息存储协议 MessageStore。
- cancellation: 协作式取消令牌。
- exceptions: 业务异常类型定义。
"""

"""远端模型集成层。

该包下的模块负责：
- 定义补全策略接口 (base)。
- 维护默认模型参数与限额 (registry)。
- 实现 HTTP 调用与两种补全策略 (openai_client)。
- 解析 SSE 流并拼装增量结果 (stream)。
"""

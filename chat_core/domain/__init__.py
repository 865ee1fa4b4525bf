"""领域层模型与协议。

包含：
- models: Message / ConversationSummary / StreamRequest 等统一模型。
- events: 完成流事件的封闭变体及解析函数。
- conversation: ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""

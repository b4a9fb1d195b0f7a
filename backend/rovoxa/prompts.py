"""Prompt 拼接：把对话上下文、天气、搜索结果和附件内容组合进用户消息"""
from typing import Optional, Sequence

from .db.models import MessageRecord


def format_context(messages: Sequence[MessageRecord]) -> str:
    """最近几条消息 -> "User: ... / Assistant: ..." 文本"""
    lines = []
    for msg in messages:
        speaker = "User" if msg.role == "user" else "Assistant"
        lines.append(f"{speaker}: {msg.content}")
    return "\n".join(lines)


def build_enhanced_prompt(
    message: str,
    context: str = "",
    weather_location: Optional[str] = None,
    weather_text: Optional[str] = None,
    search_query: Optional[str] = None,
    search_text: Optional[str] = None,
    file_text: Optional[str] = None,
) -> str:
    """
    组合最终发送给模型的 prompt

    优先级：天气数据 > 搜索结果 > 对话上下文（三者只用一个）；附件内容总是追加在最后。

    Args:
        message: 用户原始消息
        context: format_context 的结果
        weather_location: 天气查询的城市
        weather_text: 格式化后的天气数据
        search_query: 搜索关键词
        search_text: 格式化后的搜索结果
        file_text: 附件内容

    Returns:
        str: prompt
    """
    if weather_text:
        prompt = (
            f"User message: {message}\n\n"
            f"Here is the current weather data for {weather_location}:\n{weather_text}\n\n"
            f"Please use this live weather information to provide an accurate response."
        )
    elif search_text:
        prompt = (
            f"User message: {message}\n\n"
            f'Here are the latest web search results for "{search_query}":\n{search_text}\n\n'
            f"Please use this information to provide an accurate and up-to-date response."
        )
    elif context:
        prompt = (
            f"Previous conversation context:\n{context}\n\n"
            f"Current user message: {message}\n\n"
            f"Please respond naturally, remembering the context of our conversation."
        )
    else:
        prompt = message

    if file_text:
        prompt += f"\n\nThe user has attached the following files:\n{file_text}"
    return prompt

"""LLM 初始化（Gemini）"""
from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from .config import config
from .utils.structured_logger import get_logger

logger = get_logger(__name__)

MODEL_NAME = config.GEMINI_MODEL


@dataclass
class GenerationResult:
    """一次生成的结果；失败时 reply 为空、error 有值"""
    success: bool
    reply: str = ""
    error: Optional[str] = None


def _extract_text_from_message(msg) -> str:
    """
    从消息中提取纯文本内容

    Args:
        msg: 消息对象

    Returns:
        str: 提取的文本内容
    """
    if hasattr(msg, 'content'):
        content = msg.content
        if isinstance(content, str):
            return content
        # 多模态格式：只取 text 类型的内容
        if isinstance(content, list):
            texts = []
            for item in content:
                if isinstance(item, dict) and item.get('type') == 'text':
                    texts.append(item.get('text', ''))
                elif isinstance(item, str):
                    texts.append(item)
            return ''.join(texts)
    return ''


def get_llm() -> ChatGoogleGenerativeAI:
    """获取 LLM 实例；未配置 GEMINI_API_KEY 时抛 RuntimeError"""
    if not config.GEMINI_API_KEY:
        raise RuntimeError("Gemini API key not configured")

    return ChatGoogleGenerativeAI(
        model=MODEL_NAME,
        temperature=config.GEMINI_TEMPERATURE,
        google_api_key=config.GEMINI_API_KEY,
    )


async def generate_response(prompt: str) -> GenerationResult:
    """
    调用 Gemini 生成回复，不抛异常

    Args:
        prompt: 已经拼好上下文的 prompt

    Returns:
        GenerationResult
    """
    try:
        llm = get_llm()
        response = await llm.ainvoke([HumanMessage(content=prompt)])
    except Exception as e:
        logger.error(f"Gemini 调用失败: {e}")
        return GenerationResult(success=False, error=str(e) or "Failed to generate response")

    reply = _extract_text_from_message(response).strip()
    if not reply:
        return GenerationResult(success=False, error="Empty response from Gemini")
    return GenerationResult(success=True, reply=reply)

"""聊天回复流解析

响应体是若干行 `0:"<JSON转义的文本>"`，每行是一段追加的文本。
"""
import json
from typing import Iterable, Iterator, Optional

from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

TEXT_PART_PREFIX = "0:"


def encode_text_part(text: str) -> str:
    """服务端使用：把一段文本编码成一行"""
    return f"{TEXT_PART_PREFIX}{json.dumps(text, ensure_ascii=False)}\n"


def decode_stream_line(line: str) -> Optional[str]:
    """解析一行；不是文本段或解析失败返回None"""
    line = line.strip()
    if not line.startswith(TEXT_PART_PREFIX):
        return None
    try:
        data = json.loads(line[len(TEXT_PART_PREFIX):])
    except ValueError:
        logger.debug(f"忽略无法解析的流数据: {line[:80]}")
        return None
    if not isinstance(data, str):
        return None
    return data


def accumulate(lines: Iterable[str]) -> Iterator[str]:
    """逐行累加，每收到一段就产出当前完整文本"""
    text = ""
    for line in lines:
        part = decode_stream_line(line)
        if part is None:
            continue
        text += part
        yield text

"""上传文件处理：把附件转换成可以拼进 prompt 的文本"""
import json
import os
from dataclasses import dataclass, field
from typing import List, Sequence

from fastapi import UploadFile

from .config import config
from .utils.structured_logger import get_logger

logger = get_logger(__name__)

CSV_PREVIEW_LINES = 10


class UploadRejected(ValueError):
    """附件不符合上传限制（类型或大小）"""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class ProcessedFile:
    name: str
    size: int
    content_type: str
    content: str
    description: str


@dataclass
class FileContext:
    """所有附件拼接后的结果"""
    content: str = ""
    summary: str = ""
    files: List[ProcessedFile] = field(default_factory=list)


def _kb(size: int) -> int:
    return round(size / 1024)


def _truncate(text: str) -> str:
    limit = config.MAX_FILE_TEXT_CHARS
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def describe_file(name: str, content_type: str, data: bytes) -> ProcessedFile:
    """
    按类型提取单个文件的内容

    Args:
        name: 文件名
        content_type: MIME 类型
        data: 文件字节

    Returns:
        ProcessedFile；读取失败时 content 里写明原因，不抛异常
    """
    size = len(data)
    content_type = content_type or "application/octet-stream"

    if content_type.startswith("image/"):
        content = (
            f"User has uploaded an image file: {name}. The image is {_kb(size)}KB in size "
            f"and has MIME type {content_type}. Please analyze this image if possible "
            f"or ask the user to describe what they want to know about it."
        )
        description = f"[Image: {name}] - Size: {_kb(size)}KB, Type: {content_type}"

    elif content_type == "application/pdf":
        content = (
            f"[PDF Document: {name}] - This is a PDF document. Please ask the user to describe "
            f"the content or provide a summary of what they want to know about this document."
        )
        description = f"[PDF: {name}] - {_kb(size)}KB"

    elif "json" in content_type:
        try:
            parsed = json.loads(data.decode("utf-8"))
            content = f"[JSON File: {name}]\nContent:\n{_truncate(json.dumps(parsed, indent=2, ensure_ascii=False))}"
            count = len(parsed) if isinstance(parsed, (dict, list)) else 1
            description = f"[JSON: {name}] - {count} properties"
        except (UnicodeDecodeError, ValueError):
            content = f"[JSON File: {name}] - Invalid JSON format"
            description = f"[JSON: {name}] - Parse error"

    elif "csv" in content_type or name.lower().endswith(".csv"):
        try:
            lines = data.decode("utf-8").split("\n")
            preview = "\n".join(lines[:CSV_PREVIEW_LINES])
            if len(lines) > CSV_PREVIEW_LINES:
                preview += "\n... (truncated)"
            content = f"[CSV File: {name}]\nContent (first {CSV_PREVIEW_LINES} lines):\n{preview}"
            description = f"[CSV: {name}] - {len(lines)} rows"
        except UnicodeDecodeError:
            content = f"[CSV File: {name}] - Could not read CSV content"
            description = f"[CSV: {name}] - Read error"

    elif content_type.startswith("text/"):
        try:
            text = data.decode("utf-8")
            content = f"[Text File: {name}]\nContent:\n{_truncate(text)}"
            description = f"[Text File: {name}] - {len(text)} characters"
        except UnicodeDecodeError:
            content = f"[Text File: {name}] - Could not read file content"
            description = f"[Text File: {name}] - Read error"

    else:
        content = (
            f"[File: {name}] - Type: {content_type}, Size: {_kb(size)}KB. "
            f"Please ask the user what they want to know about this file."
        )
        description = f"[File: {name}] - {content_type}, {_kb(size)}KB"

    return ProcessedFile(name=name, size=size, content_type=content_type, content=content, description=description)


def check_upload_type(name: str, content_type: str):
    """扩展名和 MIME 类型都在允许列表里才接受"""
    extension = os.path.splitext(name)[1].lower()
    mime = (content_type or "").lower()
    if extension not in config.ALLOWED_UPLOAD_EXTENSIONS or not any(
        mime.startswith(prefix) for prefix in config.ALLOWED_UPLOAD_MIME_PREFIXES
    ):
        raise UploadRejected(
            f"Invalid file type: {name}. Only images, videos, audio, and documents are allowed.",
            "INVALID_FILE_TYPE",
        )


async def read_upload(upload: UploadFile) -> bytes:
    """最多读 MAX_UPLOAD_BYTES + 1 字节，超出即拒绝，不把大文件整个读进内存"""
    limit = config.MAX_UPLOAD_BYTES
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise UploadRejected(
            f"File too large: {upload.filename}. Maximum size is {limit} bytes.",
            "FILE_TOO_LARGE",
        )
    return data


async def process_uploaded_files(files: Sequence[UploadFile]) -> FileContext:
    """
    校验并读取全部上传文件，拼接内容

    Raises:
        UploadRejected: 任一文件类型不允许或超过大小限制
    """
    if not files:
        return FileContext()

    for upload in files:
        check_upload_type(upload.filename or "", upload.content_type or "")

    processed: List[ProcessedFile] = []
    for upload in files:
        name = upload.filename or "upload"
        data = await read_upload(upload)
        processed.append(describe_file(name, upload.content_type or "", data))
        logger.info(f"已处理上传文件: {name} ({len(data)} bytes)")

    return FileContext(
        content="\n\n".join(item.content for item in processed),
        summary="\n".join(item.description for item in processed),
        files=processed,
    )

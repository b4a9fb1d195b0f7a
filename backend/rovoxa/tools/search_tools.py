"""搜索工具：基于 Google Custom Search，为 prompt 补充最新网页结果"""
from collections import OrderedDict
from typing import Any, Dict

import requests

from ..config import config
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
MAX_CACHE_SIZE = 5

SEARCH_KEYWORDS = [
    'latest', 'today', 'current', 'news', 'weather', 'recent',
    'now', 'happening', 'breaking', 'update', 'trending',
    'what is', 'who is', 'when did', 'where is', 'how to',
    'best', 'top', 'new', '2024', '2025',
]

_search_cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()


def should_trigger_web_search(message: str) -> bool:
    lower_message = message.lower()
    return any(keyword in lower_message for keyword in SEARCH_KEYWORDS)


def search_web(query: str, num_results: int = 3) -> Dict[str, Any]:
    """
    搜索网页

    Args:
        query: 搜索关键词
        num_results: 返回结果数量

    Returns:
        {"success": bool, "results": [...], "query": ...}，失败时带 error，不抛异常
    """
    cache_key = query.lower().strip()
    if cache_key in _search_cache:
        logger.info(f"使用缓存的搜索结果: {query}")
        return _search_cache[cache_key]

    try:
        if not config.GOOGLE_API_KEY or not config.SEARCH_ENGINE_ID:
            raise RuntimeError("Google Custom Search API credentials not configured")

        params = {
            "key": config.GOOGLE_API_KEY,
            "cx": config.SEARCH_ENGINE_ID,
            "q": query,
            "num": num_results,
            "safe": "active",
        }
        response = requests.get(SEARCH_URL, params=params, timeout=10)
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.Timeout:
        logger.warning(f"搜索超时: {query}")
        return {"success": False, "error": "search timed out", "results": [], "query": query}
    except (requests.exceptions.RequestException, RuntimeError, ValueError) as e:
        logger.warning(f"搜索失败: {e}")
        return {"success": False, "error": str(e), "results": [], "query": query}

    items = data.get("items") or []
    if not items:
        return {"success": False, "message": "No search results found", "results": [], "query": query}

    results = [
        {
            "rank": index,
            "title": item.get("title") or "No title",
            "snippet": item.get("snippet") or "No description available",
            "link": item.get("link") or "#",
        }
        for index, item in enumerate(items[:num_results], 1)
    ]
    result = {
        "success": True,
        "results": results,
        "query": query,
        "total_results": (data.get("searchInformation") or {}).get("totalResults", "0"),
    }

    if len(_search_cache) >= MAX_CACHE_SIZE:
        _search_cache.popitem(last=False)
    _search_cache[cache_key] = result
    logger.info(f"搜索到 {len(results)} 条结果: {query}")
    return result


def format_search_results(search: Dict[str, Any]) -> str:
    if not search.get("success") or not search.get("results"):
        return f'No results found for "{search.get("query", "")}".'

    formatted_results = []
    for result in search["results"]:
        formatted_results.append(
            f"{result['rank']}. {result['title']}\n"
            f"   Link: {result['link']}\n"
            f"   Summary: {result['snippet']}\n"
        )
    return "\n".join(formatted_results)

"""天气查询工具：为 prompt 补充实时天气数据（OpenWeather）"""
import re
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from ..config import config
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
MAX_CACHE_SIZE = 10
CACHE_DURATION_SECONDS = 5 * 60

WEATHER_KEYWORDS = [
    'weather', 'temperature', 'forecast', 'rain', 'sunny', 'cloudy',
    'snow', 'wind', 'humidity', 'hot', 'cold', 'warm', 'cool',
    'storm', 'thunder', 'lightning', 'fog', 'mist', 'drizzle',
    'climate', 'season', 'degrees', 'celsius', 'fahrenheit',
]

LOCATION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"how is the weather in (.+)",
        r"what'?s the weather in (.+)",
        r"what is the weather in (.+)",
        r"current weather (?:in|for|at) (.+)",
        r"weather (?:in|for|at) (.+)",
        r"temperature (?:in|for) (.+)",
        r"forecast (?:for|in) (.+)",
    )
]

# location(小写) -> (时间戳, 结果)
_weather_cache: "OrderedDict[str, tuple]" = OrderedDict()


def should_trigger_weather_search(message: str) -> bool:
    lower_message = message.lower()
    return any(keyword in lower_message for keyword in WEATHER_KEYWORDS)


def extract_location_from_message(message: str) -> Optional[str]:
    """从消息里提取城市名，例如 "weather in Paris today?" -> "Paris today" 去掉尾部标点"""
    for pattern in LOCATION_PATTERNS:
        match = pattern.search(message)
        if match and match.group(1).strip():
            return match.group(1).strip().rstrip("?!.").strip() or None
    return None


def get_weather_data(location: str) -> Dict[str, Any]:
    """
    查询指定城市的当前天气

    Args:
        location: 城市名称

    Returns:
        {"success": True, ...} 或 {"success": False, "error": ...}，不抛异常
    """
    cache_key = location.lower().strip()
    cached = _weather_cache.get(cache_key)
    if cached and time.time() - cached[0] < CACHE_DURATION_SECONDS:
        logger.info(f"使用缓存的天气数据: {location}")
        return cached[1]

    try:
        if not config.WEATHER_API_KEY:
            raise RuntimeError("OpenWeatherMap API key not configured")

        params = {
            "q": location,
            "appid": config.WEATHER_API_KEY,
            "units": "metric",
            "lang": "en",
        }
        response = requests.get(WEATHER_URL, params=params, timeout=10)
        if response.status_code == 401:
            raise RuntimeError("Invalid OpenWeatherMap API key")
        if response.status_code == 404:
            raise RuntimeError(f'Location "{location}" not found')
        response.raise_for_status()
        data = response.json()

        visibility = data.get("visibility")
        result = {
            "success": True,
            "location": data["name"],
            "country": data["sys"]["country"],
            "temperature": round(data["main"]["temp"]),
            "feels_like": round(data["main"]["feels_like"]),
            "humidity": data["main"]["humidity"],
            "description": data["weather"][0]["description"],
            "wind_speed": (data.get("wind") or {}).get("speed", 0),
            "visibility": round(visibility / 1000) if visibility else None,
            "sunrise": datetime.fromtimestamp(data["sys"]["sunrise"]).strftime("%H:%M"),
            "sunset": datetime.fromtimestamp(data["sys"]["sunset"]).strftime("%H:%M"),
            "timestamp": datetime.now().isoformat(),
        }
    except (requests.exceptions.RequestException, RuntimeError, KeyError, ValueError) as e:
        logger.warning(f"天气查询失败: {e}")
        return {"success": False, "error": str(e), "location": location}

    if len(_weather_cache) >= MAX_CACHE_SIZE:
        _weather_cache.popitem(last=False)
    _weather_cache[cache_key] = (time.time(), result)
    logger.info(f"天气数据已获取: {location}")
    return result


def format_weather_results(weather: Dict[str, Any]) -> str:
    if not weather.get("success"):
        return f"Weather Error: {weather.get('error', 'unknown error')}"

    lines = [
        f"Weather in {weather['location']}, {weather['country']}",
        f"- Temperature: {weather['temperature']}°C (feels like {weather['feels_like']}°C)",
        f"- Conditions: {weather['description'].capitalize()}",
        f"- Humidity: {weather['humidity']}%",
    ]
    if weather.get("wind_speed"):
        lines.append(f"- Wind: {weather['wind_speed']} m/s")
    if weather.get("visibility"):
        lines.append(f"- Visibility: {weather['visibility']} km")
    lines.append(f"- Sunrise: {weather['sunrise']}, Sunset: {weather['sunset']}")
    return "\n".join(lines)

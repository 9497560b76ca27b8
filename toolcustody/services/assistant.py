"""自然语言库存问答（Gemini REST）。任何失败都返回固定文案，不向上抛。"""
import json
import logging
from typing import Iterable, Optional

import requests

from toolcustody.schemas import Tool

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

EMPTY_ANSWER = "Sorry, I couldn't analyze the data right now."
UNAVAILABLE = "The AI assistant is currently unavailable."

PROMPT = """
You are Pulse, an intelligent construction equipment coordinator.

Inventory Data:
{inventory}

Current User Query: "{query}"

Instructions:
1. Be professional, concise, and helpful.
2. STRICT RELEVANCE: Only provide information directly related to the items or equipment categories mentioned in the user query.
3. NO UNRELATED ADVICE: If an item is unavailable, do NOT list unrelated available equipment.
4. ALTERNATIVES: You may suggest logical alternatives ONLY if they are within the same functional category.
5. MAINTENANCE INSIGHTS: If relevant to the specific item asked about, mention its health or repair status.
6. Formulate your response as a direct answer followed by a brief "Maintenance Insight" or "Pulse Alert" if critical.
"""


def summarize_tools(tools: Iterable[Tool]) -> list[dict]:
    summary = []
    for t in tools:
        last = t.logs[-1].timestamp.date().isoformat() if t.logs else "N/A"
        summary.append({
            "name": t.name,
            "status": t.status.value,
            "category": t.category,
            "holder": t.current_holder_name or "None",
            "site": t.current_site or "Warehouse",
            "lastAction": last,
        })
    return summary


def generate_text(prompt: str, api_key: Optional[str], model: str, timeout: int) -> str:
    """调用 generateContent，返回拼接后的文本；网络/格式错误直接抛给调用方处理。"""
    if not api_key:
        raise RuntimeError("gemini_api_key is not configured")
    resp = requests.post(
        GEMINI_URL.format(model=model),
        params={"key": api_key},
        json={"contents": [{"parts": [{"text": prompt}]}]},
        timeout=timeout,
    )
    resp.raise_for_status()
    data = resp.json()
    parts = (data.get("candidates") or [{}])[0].get("content", {}).get("parts", [])
    return "".join(p.get("text", "") for p in parts).strip()


def analyze_tools(tools: Iterable[Tool], query: str, settings) -> str:
    prompt = PROMPT.format(
        inventory=json.dumps(summarize_tools(tools), indent=2),
        query=query,
    )
    try:
        text = generate_text(
            prompt,
            settings.gemini_api_key,
            settings.gemini_model,
            settings.collaborator_timeout_seconds,
        )
    except Exception as e:
        logger.error("assistant query failed: %s", e)
        return UNAVAILABLE
    return text or EMPTY_ANSWER

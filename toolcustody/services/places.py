"""地址联想：先走 Google Places，失败再让 Gemini 给候选；全部失败返回空列表。"""
import logging
import re

import requests

from toolcustody.services.assistant import generate_text

logger = logging.getLogger(__name__)

PLACES_URL = "https://maps.googleapis.com/maps/api/place/autocomplete/json"
MAX_RESULTS = 5
MIN_QUERY_LEN = 3

_LIST_MARKER = re.compile(r"^[\*\-\d\.]+\s*")


def _places_autocomplete(query: str, settings) -> list[str]:
    if not settings.google_maps_api_key:
        raise RuntimeError("google_maps_api_key is not configured")
    params = {"input": query, "key": settings.google_maps_api_key, "types": "address"}
    if settings.address_country:
        params["components"] = f"country:{settings.address_country}"

    resp = requests.get(PLACES_URL, params=params, timeout=settings.collaborator_timeout_seconds)
    resp.raise_for_status()
    data = resp.json()
    status = data.get("status")
    if status == "ZERO_RESULTS":
        return []
    if status != "OK":
        raise RuntimeError(f"places api status {status}: {data.get('error_message', '')}")
    return [p["description"] for p in data.get("predictions", []) if p.get("description")]


def _gemini_addresses(query: str, settings) -> list[str]:
    prompt = (
        f'Find {MAX_RESULTS} precise real-world street addresses or project locations '
        f'(country code "{settings.address_country}") matching the prefix: "{query}". '
        "Return ONLY the list of addresses, one per line. "
        "Do not include any introductory text, numbers, or bullet points."
    )
    text = generate_text(
        prompt,
        settings.gemini_api_key,
        settings.gemini_model,
        settings.collaborator_timeout_seconds,
    )
    lines = (_LIST_MARKER.sub("", line).strip() for line in text.splitlines())
    # 太短的不像地址
    return [line for line in lines if len(line) > 8]


def search_addresses(query: str, settings) -> list[str]:
    q = (query or "").strip()
    if len(q) < MIN_QUERY_LEN:
        return []

    for name, strategy in (("places", _places_autocomplete), ("gemini", _gemini_addresses)):
        try:
            return strategy(q, settings)[:MAX_RESULTS]
        except Exception as e:
            logger.warning("address lookup via %s failed: %s", name, e)
    return []

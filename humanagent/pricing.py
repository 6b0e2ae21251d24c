"""Pricing catalog for LLM token costs (per 1K tokens).

Only models listed here (or in the external JSON catalog referenced by
``PRICING_CATALOG_PATH``) have cost computed.  Unknown models yield ``None``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional
from typing import Tuple

logger = logging.getLogger(__name__)

# USD per 1K tokens (in, out).
MODEL_PRICES_USD_PER_1K: dict[str, Tuple[float, float]] = {
    "gpt-mock": (0.0, 0.0),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.0025, 0.01),
}

_CATALOG_CACHE: Optional[dict[str, Tuple[float, float]]] = None


def _load_from_env() -> Optional[dict[str, Tuple[float, float]]]:
    """Load pricing from the JSON file named by ``PRICING_CATALOG_PATH``.

    Accepted JSON shapes:
    - { "model_id": [in_price_per_1k, out_price_per_1k], ... }
    - { "model_id": {"in": 0.001, "out": 0.002}, ... }
    """
    path = os.getenv("PRICING_CATALOG_PATH")
    if not path:
        return None
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("pricing catalog %s unreadable: %s", path, exc)
        return None
    if not isinstance(raw, dict):
        return None
    parsed: dict[str, Tuple[float, float]] = {}
    for k, v in raw.items():
        if isinstance(v, (list, tuple)) and len(v) == 2:
            parsed[k] = (float(v[0]), float(v[1]))
        elif isinstance(v, dict) and "in" in v and "out" in v:
            parsed[k] = (float(v["in"]), float(v["out"]))
    return parsed or None


def get_usd_prices_per_1k(model_id: str) -> Optional[Tuple[float, float]]:
    global _CATALOG_CACHE
    if _CATALOG_CACHE is None:
        external = _load_from_env()
        _CATALOG_CACHE = {**MODEL_PRICES_USD_PER_1K, **(external or {})}
    return _CATALOG_CACHE.get(model_id)


def estimate_cost_usd(model_id: str, prompt_tokens: int, completion_tokens: int) -> Optional[float]:
    prices = get_usd_prices_per_1k(model_id)
    if prices is None:
        return None
    in_price, out_price = prices
    return round(prompt_tokens / 1000 * in_price + completion_tokens / 1000 * out_price, 6)

"""Start-to-close timeouts for backend invocations.

Resolution order: quick mode, per-provider environment override, explicit
option, task-type table, default. Reasoning tier multiplies the table and
default values.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "FORGELOOP"

TIMEOUT_QUICK_MODE = 120.0
TIMEOUT_DEFAULT = 300.0

# Matched against the task type / step name, first hit wins.
TASK_TIMEOUTS: tuple[tuple[str, float], ...] = (
    (r"IMPLEMENTATION", 900.0),
)

TIER_MULTIPLIERS: dict[str, float] = {
    "mini": 1.0,
    "standard": 2.0,
    "thinking": 6.0,
    "pro": 6.0,
    "max": 12.0,
}


def env_var_for(provider: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", provider).strip("_").upper()
    return f"{ENV_PREFIX}_{slug}_TIMEOUT"


def apply_tier(base: float, tier: str | None) -> float:
    if not tier:
        return base
    return base * TIER_MULTIPLIERS.get(tier.lower(), 1.0)


def task_timeout(task_type: str | None, tier: str | None = None) -> float | None:
    if not task_type:
        return None
    for pattern, seconds in TASK_TIMEOUTS:
        if re.search(pattern, task_type, re.IGNORECASE):
            return apply_tier(seconds, tier)
    return None


def resolve_timeout(
    provider: str,
    *,
    explicit: float | None = None,
    task_type: str | None = None,
    tier: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> float:
    env = os.environ if environ is None else environ

    if env.get(f"{ENV_PREFIX}_QUICK_MODE"):
        return TIMEOUT_QUICK_MODE

    override = env.get(env_var_for(provider))
    if override:
        try:
            return float(override)
        except ValueError:
            logger.warning("Ignoring non-numeric %s=%r", env_var_for(provider), override)

    if explicit is not None and explicit > 0:
        return explicit

    adaptive = task_timeout(task_type or env.get(f"{ENV_PREFIX}_CURRENT_STEP"), tier)
    if adaptive is not None:
        return adaptive

    return apply_tier(TIMEOUT_DEFAULT, tier)

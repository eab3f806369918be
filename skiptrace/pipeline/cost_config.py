"""
Cost configuration loader — per-provider prices, daily budgets, and guardrails.

YAML file with in-memory cache and hardcoded fallback if the file is missing.
SKIP_TRACE_DAILY_BUDGET_USD and SKIP_TRACE_RPS override every provider.
"""
import logging
import os
from typing import Optional

import yaml

from skiptrace.services.guardrails import GuardrailsConfig

logger = logging.getLogger('pipeline.cost')


_cost_config = None

_BREAKER_DEFAULTS = {
    'window_size': 200,
    'min_samples': 30,
    'error_threshold': 0.3,
    'cooldown_seconds': 60,
    'probe_quota': 1,
}


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'providers': {
            'batchdata':  {'cost_cents': 12, 'daily_budget_usd': 10.00, 'capacity': 5, 'refill_rate': 2.0},
            'whitepages': {'cost_cents': 15, 'daily_budget_usd': 10.00, 'capacity': 5, 'refill_rate': 1.0},
            'stub':       {'cost_cents': 0, 'daily_budget_usd': None, 'capacity': 50, 'refill_rate': 50.0},
        },
    }


def load_cost_config() -> dict:
    """Load cost config from YAML, with in-memory cache and hardcoded fallback."""
    global _cost_config
    if _cost_config is not None:
        return _cost_config

    config_path = os.path.join(os.path.dirname(__file__), 'cost_config.yaml')
    try:
        with open(config_path, 'r') as f:
            _cost_config = yaml.safe_load(f)
        logger.info("Config loaded from YAML (version=%s)", _cost_config.get('version', '?'))
    except Exception as e:
        logger.warning("YAML config not found (%s), using defaults", e)
        _cost_config = _default_config()

    return _cost_config


def _provider_section(provider: str) -> dict:
    cfg = load_cost_config()
    return cfg.get('providers', {}).get(provider.lower(), {})


def get_cost_cents(provider: str) -> int:
    """Expected price of one lookup, in cents."""
    return int(_provider_section(provider).get('cost_cents', 0))


def get_daily_budget_usd(provider: str) -> Optional[float]:
    """Daily cap in dollars; None means uncapped."""
    override = os.getenv('SKIP_TRACE_DAILY_BUDGET_USD')
    if override not in (None, ''):
        return float(override)
    value = _provider_section(provider).get('daily_budget_usd')
    return None if value is None else float(value)


def get_rate_limit(provider: str) -> tuple:
    """(capacity, refill_rate per second) for the provider's token bucket."""
    section = _provider_section(provider)
    refill = float(section.get('refill_rate', 1.0))
    override = os.getenv('SKIP_TRACE_RPS')
    if override not in (None, ''):
        refill = float(override)
    capacity = float(section.get('capacity', max(1.0, refill)))
    return capacity, refill


def guardrails_config(provider: str) -> GuardrailsConfig:
    """Assemble the GuardrailsConfig for one provider."""
    breaker = dict(_BREAKER_DEFAULTS)
    breaker.update(_provider_section(provider).get('breaker') or {})
    capacity, refill = get_rate_limit(provider)
    budget = get_daily_budget_usd(provider)
    return GuardrailsConfig(
        provider=provider.lower(),
        cost_cents=get_cost_cents(provider),
        daily_budget_cents=None if budget is None else int(round(budget * 100)),
        capacity=capacity,
        refill_rate=refill,
        window_size=int(breaker['window_size']),
        min_samples=int(breaker['min_samples']),
        error_threshold=float(breaker['error_threshold']),
        cooldown_seconds=float(breaker['cooldown_seconds']),
        probe_quota=int(breaker['probe_quota']),
    )


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _cost_config
    _cost_config = None

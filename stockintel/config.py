"""
App configuration: built-in defaults, YAML overlay, ${ENV} expansion and validation.
"""
import copy
import yaml
import os
import re
from typing import Any, Dict, Optional
from pathlib import Path


DEFAULT_CONFIG_PATH = "config/config.yaml"

# Mirrors config/config.yaml so the library works without a config file.
DEFAULT_CONFIG: Dict[str, Any] = {
    'environment': 'development',
    'logging': {
        'logs_dir': './logs',
        'level': 'INFO',
        'rotation': '1 day',
        'retention': '30 days',
        'format': 'text',
    },
    'credentials': {},
    'indicators': {
        'rsi_period': 14,
        'macd_fast': 12,
        'macd_slow': 26,
        'macd_signal': 9,
        'bollinger_period': 20,
        'bollinger_std': 2.0,
        'atr_period': 14,
        'volume_period': 20,
    },
    'signals': {
        'rsi_oversold': 30.0,
        'rsi_overbought': 70.0,
        'bollinger_lower_pct_b': 0.1,
        'bollinger_upper_pct_b': 0.9,
        'bollinger_band_proximity': 0.02,
        'volume_high_ratio': 1.5,
        'volume_low_ratio': 0.8,
        'volume_amplification': 1.25,
        'volume_dampening': 0.75,
    },
    'aggregator': {
        'weights': {
            'technical-analysis': 25,
            'news-sentiment': 25,
            'social-sentiment': 15,
            'web-research': 20,
            'options-flow': 15,
        },
        'timeouts': {
            'technical-analysis': 15.0,
            'news-sentiment': 15.0,
            'social-sentiment': 45.0,
            'web-research': 60.0,
            'options-flow': 20.0,
        },
        'quick_score': 25,
        'history_days': 365,
    },
    'sources': {
        'news': {
            'providers': ['finnhub', 'newsapi'],
            'sentiment_band': 0.2,
            'max_articles': 10,
            'days_back': 7,
            'finnhub_url': 'https://finnhub.io/api/v1',
            'newsapi_url': 'https://newsapi.org/v2',
        },
        'social': {
            'providers': ['grok'],
            'sentiment_band': 0.2,
            'grok_url': 'https://api.x.ai/v1',
            'grok_model': 'grok-4-1-fast-reasoning',
        },
        'research': {
            'providers': ['gemini', 'perplexity'],
            'confidence': {'gemini': 75, 'perplexity': 70},
            'gemini_url': 'https://generativelanguage.googleapis.com/v1beta',
            'gemini_model': 'gemini-2.5-flash',
            'perplexity_url': 'https://api.perplexity.ai',
            'perplexity_model': 'sonar',
        },
        'options': {
            'providers': ['polygon'],
            'bullish_put_call': 0.8,
            'bearish_put_call': 1.1,
            'large_order_count': 5,
            'polygon_url': 'https://api.polygon.io',
        },
    },
    'market_data': {
        'providers': ['polygon', 'alphavantage'],
        'quote_ttl_seconds': 60,
        'polygon_url': 'https://api.polygon.io',
        'alphavantage_url': 'https://www.alphavantage.co/query',
        'timeout': 15.0,
    },
    'synthesis': {
        'url': 'https://api.anthropic.com/v1/messages',
        'model': 'claude-sonnet-4-5',
        'api_version': '2023-06-01',
        'max_tokens': 4096,
        'timeout': 120.0,
        'input_cost_per_1k': 0.003,
        'output_cost_per_1k': 0.015,
    },
    'orchestrator': {
        'enabled': True,
        'model': 'claude-opus-4-5',
        'max_tokens': 1000,
        'input_cost_per_1k': 0.015,
        'output_cost_per_1k': 0.075,
    },
    'history': {
        'max_per_symbol': 10,
        'path': None,
    },
    'server': {
        'host': '127.0.0.1',
        'port': 8000,
    },
}


_ENV_REF = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')


def resolve_env_vars(value: Any) -> Any:
    """
    Substitute `${NAME}` and `${NAME:fallback}` references from the environment.

    Walks nested dicts and lists; unset variables without a fallback become
    empty strings, which the credential layer treats as "not configured".

    Args:
        value: Any config node

    Returns:
        The node with every string reference expanded
    """
    if isinstance(value, str):
        return _ENV_REF.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            value
        )
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge override into a copy of base. Lists are replaced, not merged.
    """
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[str] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Build the app config from DEFAULT_CONFIG plus an optional YAML overlay.

    The file only needs the keys it changes. Passing None skips the file
    and returns the defaults with env references expanded.

    Args:
        config_path: YAML overlay path, or None

    Returns:
        Merged, env-resolved config dict

    Raises:
        FileNotFoundError: The overlay path does not exist
        yaml.YAMLError: The overlay is not valid YAML
    """
    if config_path is None:
        return resolve_env_vars(copy.deepcopy(DEFAULT_CONFIG))

    overlay_path = Path(config_path)
    if not overlay_path.exists():
        raise FileNotFoundError(f"Config overlay not found: {config_path}")

    with open(overlay_path, 'r', encoding='utf-8') as f:
        overlay = yaml.safe_load(f) or {}

    return resolve_env_vars(merge_config(DEFAULT_CONFIG, overlay))


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check the sections the pipeline cannot run without.

    Weights must total 100, every source timeout must be positive and the
    RSI oversold line must sit below the overbought line.

    Raises:
        ValueError: On the first problem found
    """
    sections = ('aggregator.weights', 'aggregator.timeouts', 'signals', 'sources')
    missing = [name for name in sections if get_config_value(config, name) is None]
    if missing:
        raise ValueError(f"Required configuration fields missing: {', '.join(missing)}")

    weights = config['aggregator']['weights']
    total = sum(float(w) for w in weights.values())
    if abs(total - 100.0) > 1e-6:
        raise ValueError(f"aggregator.weights must sum to 100 (got {total:g})")

    for source, timeout in config['aggregator']['timeouts'].items():
        if float(timeout) <= 0:
            raise ValueError(f"aggregator.timeouts.{source} must be > 0")

    signals = config['signals']
    if signals.get('rsi_oversold', 30) >= signals.get('rsi_overbought', 70):
        raise ValueError("signals.rsi_oversold must be below signals.rsi_overbought")


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up a dotted path such as 'aggregator.weights.news-sentiment'."""
    node = config
    for part in path.split('.'):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node

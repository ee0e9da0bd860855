"""
Configuration loading.

Parses the YAML configuration file into an immutable NarrativeGuardConfig.
"""

import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from .models import (
    BudgetPolicy,
    BudgetScope,
    CircuitBreakerConfig,
    NarrativeGuardConfig,
    ProviderConfig,
    QualityConstraints,
    RouterSettings,
    ScopeKind,
)

PROVIDER_KINDS = {"openai", "anthropic", "offline"}


def load_config(path: str) -> NarrativeGuardConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated NarrativeGuardConfig snapshot

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> NarrativeGuardConfig:
    """Validate an already-decoded configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'providers', 'budgets', 'quality', 'circuit_breaker', 'router'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'providers' not in raw_config:
        raise ValueError("Missing required 'providers' section")
    providers_data = raw_config['providers']
    if not isinstance(providers_data, list) or not providers_data:
        raise ValueError("'providers' must be a non-empty list")
    providers = tuple(
        _parse_provider(item, f"providers[{index}]")
        for index, item in enumerate(providers_data)
    )

    budgets_data = raw_config.get('budgets') or []
    if not isinstance(budgets_data, list):
        raise ValueError("'budgets' must be a list")
    budgets = tuple(
        _parse_budget(item, f"budgets[{index}]")
        for index, item in enumerate(budgets_data)
    )

    quality = _parse_quality(raw_config.get('quality') or {})
    breaker = _parse_circuit_breaker(raw_config.get('circuit_breaker') or {})
    router = _parse_router(raw_config.get('router') or {})

    return NarrativeGuardConfig(
        providers=providers,
        budgets=budgets,
        quality=quality,
        circuit_breaker=breaker,
        router=router
    )


def _check_keys(data: Any, path: str, required: set, optional: set) -> None:
    """Reject non-mapping sections, unknown keys and missing required keys."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - required - optional
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in sorted(required):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")


def _decimal(value: Any, key: str, path: str) -> Decimal:
    # Go through str so YAML floats like 0.1 keep their written value
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if not number.is_finite():
        raise ValueError(f"'{key}' in {path} must be a finite number")
    return number


def _positive_int(value: Any, key: str, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value


def _non_empty_str(value: Any, key: str, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value


def _string_list(value: Any, key: str, path: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' in {path} must be a list of strings")
    return tuple(value)


def _parse_provider(data: Any, path: str) -> ProviderConfig:
    """Parse and validate one provider entry."""
    _check_keys(
        data, path,
        required={'name', 'kind', 'model', 'priority', 'cost_per_input_token',
                  'cost_per_output_token', 'max_tokens', 'timeout_ms'},
        optional={'base_url', 'api_key_env', 'system_prompt', 'temperature'}
    )

    kind = _non_empty_str(data['kind'], 'kind', path).lower()
    if kind not in PROVIDER_KINDS:
        raise ValueError(f"'kind' in {path} must be one of: {sorted(PROVIDER_KINDS)}")

    priority = data['priority']
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError(f"'priority' in {path} must be an integer")

    input_rate = _decimal(data['cost_per_input_token'], 'cost_per_input_token', path)
    output_rate = _decimal(data['cost_per_output_token'], 'cost_per_output_token', path)
    if input_rate < 0 or output_rate < 0:
        raise ValueError(f"token costs in {path} cannot be negative")

    base_url = data.get('base_url')
    if base_url is not None:
        base_url = _non_empty_str(base_url, 'base_url', path)
    api_key_env = data.get('api_key_env')
    if api_key_env is not None:
        api_key_env = _non_empty_str(api_key_env, 'api_key_env', path)
    if kind != "offline" and api_key_env is None:
        raise ValueError(f"Missing required 'api_key_env' in {path}")
    system_prompt = data.get('system_prompt')
    if system_prompt is not None:
        system_prompt = _non_empty_str(system_prompt, 'system_prompt', path)
    temperature = data.get('temperature')
    if temperature is not None:
        temperature = float(_decimal(temperature, 'temperature', path))
        if not 0 <= temperature <= 2:
            raise ValueError(f"'temperature' in {path} must be between 0 and 2")

    return ProviderConfig(
        name=_non_empty_str(data['name'], 'name', path),
        kind=kind,
        model=_non_empty_str(data['model'], 'model', path),
        priority=priority,
        cost_per_input_token=input_rate,
        cost_per_output_token=output_rate,
        max_tokens=_positive_int(data['max_tokens'], 'max_tokens', path),
        timeout_ms=_positive_int(data['timeout_ms'], 'timeout_ms', path),
        base_url=base_url,
        api_key_env=api_key_env,
        system_prompt=system_prompt,
        temperature=temperature
    )


def _parse_budget(data: Any, path: str) -> BudgetPolicy:
    """Parse and validate one budget policy entry."""
    _check_keys(
        data, path,
        required={'name', 'scope', 'limit'},
        optional={'user_id', 'provider', 'window_days', 'window_hours',
                  'hard_stop_fraction', 'alert_fractions'}
    )

    scope_str = _non_empty_str(data['scope'], 'scope', path)
    try:
        kind = ScopeKind(scope_str.lower())
    except ValueError:
        valid_scopes = [scope.value for scope in ScopeKind]
        raise ValueError(f"'scope' in {path} must be one of: {valid_scopes}")

    key = None
    if kind == ScopeKind.GLOBAL:
        if 'user_id' in data or 'provider' in data:
            raise ValueError(f"global budget in {path} cannot name a user or provider")
    elif kind == ScopeKind.PER_USER:
        if 'provider' in data:
            raise ValueError(f"per_user budget in {path} cannot name a provider")
        if data.get('user_id') is not None:
            key = _non_empty_str(data['user_id'], 'user_id', path)
    else:
        if 'user_id' in data:
            raise ValueError(f"per_provider budget in {path} cannot name a user")
        if data.get('provider') is not None:
            key = _non_empty_str(data['provider'], 'provider', path)

    if 'window_days' in data and 'window_hours' in data:
        raise ValueError(f"Specify only one of 'window_days' or 'window_hours' in {path}")
    window_key = 'window_hours' if 'window_hours' in data else 'window_days'
    length = float(_decimal(data.get(window_key, 30), window_key, path))
    try:
        if window_key == 'window_hours':
            window = timedelta(hours=length)
        else:
            window = timedelta(days=length)
    except OverflowError:
        raise ValueError(f"'{window_key}' in {path} is too large")

    alert_data = data.get('alert_fractions', [])
    if not isinstance(alert_data, list):
        raise ValueError(f"'alert_fractions' in {path} must be a list")
    alert_fractions = tuple(
        sorted(_decimal(value, 'alert_fractions', path) for value in alert_data)
    )

    try:
        return BudgetPolicy(
            name=_non_empty_str(data['name'], 'name', path),
            scope=BudgetScope(kind, key),
            limit_amount=_decimal(data['limit'], 'limit', path),
            window=window,
            hard_stop_fraction=_decimal(data.get('hard_stop_fraction', "0.95"),
                                        'hard_stop_fraction', path),
            alert_fractions=alert_fractions
        )
    except ValueError as e:
        raise ValueError(f"Invalid budget in {path}: {e}")


def _parse_quality(data: Any) -> QualityConstraints:
    """Parse the quality section, falling back to defaults for omitted keys."""
    path = "quality"
    _check_keys(
        data, path,
        required=set(),
        optional={'min_length', 'max_length', 'denylist', 'denylist_patterns',
                  'reject_emoji', 'terminal_markers', 'diagnostic'}
    )
    kwargs: Dict[str, Any] = {}

    for key in ('min_length', 'max_length'):
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"'{key}' in {path} must be a non-negative integer")
            kwargs[key] = value
    for key in ('denylist', 'denylist_patterns', 'terminal_markers'):
        if key in data:
            kwargs[key] = _string_list(data[key], key, path)
    for key in ('reject_emoji', 'diagnostic'):
        if key in data:
            if not isinstance(data[key], bool):
                raise ValueError(f"'{key}' in {path} must be true or false")
            kwargs[key] = data[key]

    if 'denylist_patterns' in kwargs:
        _validate_patterns(kwargs['denylist_patterns'])

    try:
        return QualityConstraints(**kwargs)
    except ValueError as e:
        raise ValueError(f"Invalid {path} section: {e}")


def _validate_patterns(patterns: Tuple[str, ...]) -> None:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid denylist pattern {pattern!r}: {e}")


def _parse_circuit_breaker(data: Any) -> CircuitBreakerConfig:
    path = "circuit_breaker"
    _check_keys(
        data, path,
        required=set(),
        optional={'failure_threshold', 'failure_window_seconds', 'cooldown_seconds'}
    )
    kwargs: Dict[str, Any] = {}
    if 'failure_threshold' in data:
        kwargs['failure_threshold'] = _positive_int(data['failure_threshold'], 'failure_threshold', path)
    for key in ('failure_window_seconds', 'cooldown_seconds'):
        if key in data:
            kwargs[key] = float(_decimal(data[key], key, path))
    try:
        return CircuitBreakerConfig(**kwargs)
    except ValueError as e:
        raise ValueError(f"Invalid {path} section: {e}")


def _parse_router(data: Any) -> RouterSettings:
    path = "router"
    _check_keys(data, path, required=set(), optional={'max_history'})
    kwargs: Dict[str, Any] = {}
    if 'max_history' in data:
        value = data['max_history']
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"'max_history' in {path} must be a non-negative integer")
        kwargs['max_history'] = value
    return RouterSettings(**kwargs)


def provider_names(config: NarrativeGuardConfig) -> List[str]:
    """Provider names in the order the router tries them."""
    return [provider.name for provider in config.providers]

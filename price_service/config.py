# Configuration - Connection Settings
# Dataclass settings for the client plus YAML/.env loading for runners

"""
Configuration Module

Responsibilities:
- Typed settings for HTTP requests, price feed requests and the WebSocket
- Load YAML config with environment overrides (.env supported)
- Validate config structure before use
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

DEFAULT_ENDPOINT = "https://hermes.pyth.network"


@dataclass
class PriceFeedRequestConfig:
    """Options sent with price feed requests and subscriptions"""
    verbose: Optional[bool] = None            # Include verbose metadata
    binary: Optional[bool] = None             # Include binary update data (VAA)
    allow_out_of_order: Optional[bool] = None  # Accept out-of-order WebSocket updates


@dataclass
class WebSocketConfig:
    """Resilience settings for the streaming connection (seconds)"""
    reconnect_base_delay: float = 0.1
    max_reconnect_delay: Optional[float] = 60.0
    heartbeat_interval: Optional[float] = 20.0
    ping_timeout: float = 33.0
    send_timeout: float = 5.0
    open_timeout: float = 10.0
    close_timeout: float = 5.0


@dataclass
class PriceServiceConnectionConfig:
    """Top-level client configuration"""
    timeout: float = 5.0          # Per HTTP request, all retries included
    http_retries: int = 3
    http_retry_delay: float = 0.5
    logger: Optional[logging.Logger] = None
    verbose: Optional[bool] = None  # Deprecated: use price_feed_request_config.verbose
    price_feed_request_config: PriceFeedRequestConfig = field(default_factory=PriceFeedRequestConfig)
    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)

    def effective_request_config(self) -> PriceFeedRequestConfig:
        """Request config with the deprecated top-level verbose folded in"""
        request = self.price_feed_request_config
        verbose = request.verbose if request.verbose is not None else self.verbose
        return PriceFeedRequestConfig(
            verbose=verbose,
            binary=request.binary,
            allow_out_of_order=request.allow_out_of_order,
        )


def load_config(config_path: Optional[Path] = None, env_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from files

    Args:
        config_path: YAML config file (defaults used when missing)
        env_path: Optional .env file with secrets/overrides

    Returns:
        Config dict
    """
    if env_path is not None:
        load_dotenv(env_path)

    if config_path is not None and Path(config_path).exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    else:
        config = {
            'endpoint': DEFAULT_ENDPOINT,
            'price_ids': [],
            'http': {
                'timeout': 5.0,
                'retries': 3,
                'retry_delay': 0.5
            },
            'price_feed_request': {
                'verbose': None,
                'binary': None,
                'allow_out_of_order': None
            },
            'websocket': {
                'reconnect_base_delay': 0.1,
                'max_reconnect_delay': 60.0,
                'heartbeat_interval': 20.0,
                'ping_timeout': 33.0,
                'send_timeout': 5.0
            },
            'logging': {
                'level': 'INFO',
                'file': None
            }
        }

    # Environment overrides
    endpoint = os.getenv('PRICE_SERVICE_ENDPOINT')
    if endpoint:
        config['endpoint'] = endpoint
    log_level = os.getenv('PRICE_SERVICE_LOG_LEVEL')
    if log_level:
        if not isinstance(config.get('logging'), dict):
            config['logging'] = {}
        config['logging']['level'] = log_level

    return config


def _section(config: dict, name: str):
    """Nested config section; a missing or null section (`http:` with no keys) reads as {}"""
    section = config.get(name)
    return {} if section is None else section


def validate_config(config: dict) -> Tuple[bool, List[str]]:
    """
    Validate configuration structure

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    endpoint = config.get('endpoint')
    if not endpoint or not isinstance(endpoint, str):
        errors.append("Config error: endpoint must be a non-empty URL")
    elif not endpoint.startswith(('http://', 'https://')):
        errors.append("Config error: endpoint must use http or https")

    for name in ('http', 'price_feed_request', 'websocket', 'logging'):
        if not isinstance(_section(config, name), dict):
            errors.append(f"Config error: {name} must be a mapping")

    http = _section(config, 'http')
    http = http if isinstance(http, dict) else {}
    websocket = _section(config, 'websocket')
    websocket = websocket if isinstance(websocket, dict) else {}

    price_ids = config.get('price_ids') or []
    if not isinstance(price_ids, list) or not all(isinstance(i, str) for i in price_ids):
        errors.append("Config error: price_ids must be a list of strings")

    numeric_checks = [
        ('http.timeout', http.get('timeout')),
        ('websocket.reconnect_base_delay', websocket.get('reconnect_base_delay')),
        ('websocket.ping_timeout', websocket.get('ping_timeout')),
        ('websocket.send_timeout', websocket.get('send_timeout')),
    ]

    for key, value in numeric_checks:
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"Config error: {key} must be a positive number")

    retries = http.get('retries')
    if retries is not None and (isinstance(retries, bool) or not isinstance(retries, int) or retries < 0):
        errors.append("Config error: http.retries must be a non-negative integer")

    return (len(errors) == 0, errors)


def build_connection_config(config: dict, logger: Optional[logging.Logger] = None) -> PriceServiceConnectionConfig:
    """Convert a validated config dict into PriceServiceConnectionConfig"""
    http = _section(config, 'http')
    request = _section(config, 'price_feed_request')
    websocket = _section(config, 'websocket')
    ws_defaults = WebSocketConfig()

    return PriceServiceConnectionConfig(
        timeout=http.get('timeout', 5.0),
        http_retries=http.get('retries', 3),
        http_retry_delay=http.get('retry_delay', 0.5),
        logger=logger,
        price_feed_request_config=PriceFeedRequestConfig(
            verbose=request.get('verbose'),
            binary=request.get('binary'),
            allow_out_of_order=request.get('allow_out_of_order'),
        ),
        websocket=WebSocketConfig(
            reconnect_base_delay=websocket.get('reconnect_base_delay', ws_defaults.reconnect_base_delay),
            max_reconnect_delay=websocket.get('max_reconnect_delay', ws_defaults.max_reconnect_delay),
            heartbeat_interval=websocket.get('heartbeat_interval', ws_defaults.heartbeat_interval),
            ping_timeout=websocket.get('ping_timeout', ws_defaults.ping_timeout),
            send_timeout=websocket.get('send_timeout', ws_defaults.send_timeout),
            open_timeout=websocket.get('open_timeout', ws_defaults.open_timeout),
            close_timeout=websocket.get('close_timeout', ws_defaults.close_timeout),
        ),
    )

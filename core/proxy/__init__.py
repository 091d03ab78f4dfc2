# core/proxy/__init__.py
"""
Вспомогательные модули пересылки.

Прокси прозрачный: без кэша, без переписывания контента, без маршрутизации
по путям. Здесь только то, чего требует транспорт.
"""

from core.proxy.headers import (
    HOP_BY_HOP_HEADERS,
    build_upstream_url,
    filter_request_headers,
    filter_response_headers,
    filter_websocket_headers,
)
from core.proxy.websocket_relay import is_websocket_upgrade, relay_websocket, requested_protocols

__all__ = [
    'HOP_BY_HOP_HEADERS',
    'build_upstream_url',
    'filter_request_headers',
    'filter_response_headers',
    'filter_websocket_headers',
    'is_websocket_upgrade',
    'relay_websocket',
    'requested_protocols',
]

# core/proxy/headers.py
"""Заголовки и URL для прозрачной пересылки"""

from multidict import CIMultiDict
from yarl import URL

# RFC 7230, 6.1: относятся только к одному транспортному соединению
HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})


def _connection_tokens(headers) -> set:
    """Дополнительные hop-by-hop заголовки, перечисленные в Connection"""
    tokens = set()
    for value in headers.getall('Connection', []):
        tokens.update(t.strip().lower() for t in value.split(',') if t.strip())
    return tokens


def _strip_hop_by_hop(headers, also_drop=()) -> CIMultiDict:
    drop = HOP_BY_HOP_HEADERS | _connection_tokens(headers) | set(also_drop)
    result = CIMultiDict()
    # add() сохраняет повторяющиеся заголовки (Set-Cookie) отдельно
    for key, value in headers.items():
        if key.lower() not in drop:
            result.add(key, value)
    return result


def filter_request_headers(headers, preserve_host=False) -> CIMultiDict:
    """
    Заголовки для upstream: все, что прислал клиент, кроме hop-by-hop.

    Host отбрасывается (если не задан preserve_host), и HTTP клиент
    подставляет адрес upstream.
    """
    also_drop = () if preserve_host else ('host',)
    return _strip_hop_by_hop(headers, also_drop)


def filter_response_headers(headers) -> CIMultiDict:
    """Заголовки ответа клиенту: заголовки upstream без hop-by-hop"""
    return _strip_hop_by_hop(headers)


def filter_websocket_headers(headers, preserve_host=False) -> CIMultiDict:
    """Заголовки для WebSocket handshake с upstream.

    Ключи handshake клиентская библиотека генерирует заново.
    """
    result = filter_request_headers(headers, preserve_host)
    for key in list(result.keys()):
        if key.lower().startswith('sec-websocket-'):
            result.popall(key, None)
    return result


def build_upstream_url(origin: str, path_qs: str) -> URL:
    """
    Склеивает origin upstream с путем и query клиента.

    path_qs берется как прислан (уже percent-encoded) и повторно не
    кодируется.
    """
    if not path_qs.startswith('/'):
        path_qs = '/' + path_qs
    return URL(origin.rstrip('/') + path_qs, encoded=True)

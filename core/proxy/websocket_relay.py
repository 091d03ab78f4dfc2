# core/proxy/websocket_relay.py
"""Прозрачная WebSocket пересылка между TLS клиентом и upstream"""

import asyncio
import logging

from aiohttp import web, WSMsgType, WSCloseCode, hdrs

logger = logging.getLogger(__name__)


def is_websocket_upgrade(request) -> bool:
    """True для клиентского WebSocket handshake"""
    return (
        request.method == hdrs.METH_GET and
        request.headers.get(hdrs.UPGRADE, '').lower() == 'websocket'
    )


def requested_protocols(request) -> tuple:
    value = request.headers.get(hdrs.SEC_WEBSOCKET_PROTOCOL, '')
    return tuple(p.strip() for p in value.split(',') if p.strip())


def _sendable_close_code(code):
    # 1005/1006/1015 зарезервированы и не отправляются в close frame
    if code is None or code in (1005, 1006, 1015):
        return WSCloseCode.OK
    return code


async def _pump(source, target, direction):
    """Копирует фреймы из source в target, пока source не закроется"""
    async for msg in source:
        if msg.type == WSMsgType.TEXT:
            await target.send_str(msg.data)
        elif msg.type == WSMsgType.BINARY:
            await target.send_bytes(msg.data)
        elif msg.type == WSMsgType.ERROR:
            logger.warning(f"WebSocket {direction} error: {source.exception()}")
            break
    logger.debug(f"WebSocket {direction} closed with code {source.close_code}")


async def relay_websocket(request, upstream_ws) -> web.WebSocketResponse:
    """
    Завершает handshake с клиентом и пересылает фреймы в обе стороны.

    upstream_ws - уже подключенный ClientWebSocketResponse. Оба
    сокета закрываются, когда уходит любая из сторон.
    """
    protocols = (upstream_ws.protocol,) if upstream_ws.protocol else ()
    client_ws = web.WebSocketResponse(protocols=protocols, max_msg_size=0)
    await client_ws.prepare(request)

    to_upstream = asyncio.ensure_future(_pump(client_ws, upstream_ws, 'client -> upstream'))
    to_client = asyncio.ensure_future(_pump(upstream_ws, client_ws, 'upstream -> client'))

    try:
        done, pending = await asyncio.wait(
            {to_upstream, to_client},
            return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                logger.warning(f"WebSocket relay stopped: {task.exception()}")
    finally:
        if not upstream_ws.closed:
            await upstream_ws.close(code=_sendable_close_code(client_ws.close_code))
        if not client_ws.closed:
            await client_ws.close(code=_sendable_close_code(upstream_ws.close_code))

    return client_ws

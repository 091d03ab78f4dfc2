"""Shared fixtures: certificate pairs, a fake upstream and free ports."""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

from aiohttp import web, WSMsgType
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


def write_self_signed_pair(directory, days: float = 365) -> tuple[Path, Path]:
    """Writes key.pem/cert.pem for CN=localhost into directory. Returns (key, cert).

    days may be fractional, or negative for an already expired certificate.
    """
    directory = Path(directory)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
    ])
    now = datetime.now(timezone.utc)
    not_after = now + timedelta(days=days)
    not_before = min(now, not_after) - timedelta(minutes=1)
    cert = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer
    ).public_key(
        private_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        not_before
    ).not_valid_after(
        not_after
    ).sign(private_key, hashes.SHA256())

    key_path = directory / "key.pem"
    cert_path = directory / "cert.pem"
    key_path.write_bytes(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return key_path, cert_path


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


GZIPPED_TEXT = b"hello from upstream " * 50

# set once the /hang handler sees its connection dropped or gets cancelled
UPSTREAM_RELEASED = web.AppKey("upstream_released", asyncio.Event)


async def _echo(request: web.Request) -> web.Response:
    body = await request.read()
    return web.json_response({
        "method": request.method,
        "path_qs": request.raw_path,
        "headers": {k: v for k, v in request.headers.items()},
        "body": body.decode("utf-8", errors="replace"),
        "length": len(body),
        "sha256": hashlib.sha256(body).hexdigest(),
    })


async def _info(request: web.Request) -> web.Response:
    return web.json_response({"id": "abc"})


async def _redirect(request: web.Request) -> web.Response:
    return web.Response(status=302, headers={"Location": "/login"})


async def _cookies(request: web.Request) -> web.Response:
    response = web.Response(text="ok")
    response.headers.add("Set-Cookie", "a=1; Path=/")
    response.headers.add("Set-Cookie", "b=2; Path=/")
    return response


async def _gzipped(request: web.Request) -> web.Response:
    return web.Response(
        body=gzip.compress(GZIPPED_TEXT),
        headers={"Content-Encoding": "gzip", "Content-Type": "text/plain"},
    )


async def _truncated(request: web.Request) -> web.StreamResponse:
    response = web.StreamResponse(headers={"Content-Length": "1000"})
    await response.prepare(request)
    await response.write(b"x" * 10)
    # let the proxy relay the first bytes, then drop the connection with 990 still owed
    await asyncio.sleep(0.2)
    request.transport.close()
    return response


def _connection_closed(request: web.Request) -> bool:
    transport = request.transport
    return transport is None or transport.is_closing()


async def _hang(request: web.Request) -> web.Response:
    """Never answers on its own; waits until the caller goes away."""
    released = request.app[UPSTREAM_RELEASED]
    try:
        while not _connection_closed(request):
            await asyncio.sleep(0.05)
    except asyncio.CancelledError:
        released.set()
        raise
    released.set()
    return web.Response(text="too late")


async def _slow(request: web.Request) -> web.Response:
    await asyncio.sleep(float(request.query.get("delay", "0.1")))
    return web.json_response({"i": request.query.get("i")})


async def _ws_echo(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(protocols=("chat",))
    await ws.prepare(request)
    async for msg in ws:
        if msg.type == WSMsgType.TEXT:
            if msg.data == "close":
                await ws.close(code=4000)
            else:
                await ws.send_str(msg.data)
        elif msg.type == WSMsgType.BINARY:
            await ws.send_bytes(msg.data)
    return ws


def make_upstream_app() -> web.Application:
    """Plaintext stand-in for the P2P backend"""
    app = web.Application(client_max_size=8 * 1024 * 1024)
    app[UPSTREAM_RELEASED] = asyncio.Event()
    app.router.add_get("/p2p/info", _info)
    app.router.add_get("/hang", _hang)
    app.router.add_get("/redirect", _redirect)
    app.router.add_get("/cookies", _cookies)
    app.router.add_get("/gzipped", _gzipped)
    app.router.add_get("/slow", _slow)
    app.router.add_get("/truncated", _truncated)
    app.router.add_get("/ws", _ws_echo)
    app.router.add_route("*", "/{path:.*}", _echo)
    return app

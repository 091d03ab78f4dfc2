"""Tests for the TLS listener lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import socket
import ssl
import tempfile
import unittest
from pathlib import Path

import aiohttp
from aiohttp.test_utils import TestServer

from core.config_manager import ProxyConfig
from core.errors import BindError
from core.proxy_manager import ProxyServer, create_ssl_context
from helpers import UPSTREAM_RELEASED, free_port, make_upstream_app, write_self_signed_pair


class TestProxyServer(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.key_path, self.cert_path = write_self_signed_pair(self.tmp.name)

        self.upstream = TestServer(make_upstream_app())
        await self.upstream.start_server()

        self.server = None

    async def asyncTearDown(self):
        if self.server is not None:
            await self.server.stop()
        await self.upstream.close()
        self.tmp.cleanup()

    def make_config(self, **options) -> ProxyConfig:
        values = {
            "host": "127.0.0.1",
            "port": 0,
            "upstream_url": f"http://127.0.0.1:{self.upstream.port}",
            "cert_path": str(self.cert_path),
            "key_path": str(self.key_path),
        }
        values.update(options)
        return ProxyConfig(**values)

    async def test_https_request_is_forwarded(self):
        self.server = ProxyServer(self.make_config())
        await self.server.start()
        self.assertTrue(self.server.is_running)

        url = f"https://127.0.0.1:{self.server.bound_port}/p2p/info"
        async with aiohttp.ClientSession() as session:
            # self-signed, so skip verification
            async with session.get(url, ssl=False) as resp:
                self.assertEqual(resp.status, 200)
                self.assertEqual(await resp.json(), {"id": "abc"})

    async def test_plaintext_request_is_rejected(self):
        self.server = ProxyServer(self.make_config())
        await self.server.start()

        url = f"http://127.0.0.1:{self.server.bound_port}/p2p/info"
        async with aiohttp.ClientSession() as session:
            with self.assertRaises(aiohttp.ClientError):
                async with session.get(url) as resp:
                    await resp.read()

    async def test_client_disconnect_releases_upstream_request(self):
        """A client that hangs up mid-request cancels the upstream request too."""
        self.server = ProxyServer(self.make_config())
        await self.server.start()

        client_ssl = ssl.create_default_context()
        client_ssl.check_hostname = False
        client_ssl.verify_mode = ssl.CERT_NONE
        reader, writer = await asyncio.open_connection(
            "127.0.0.1", self.server.bound_port, ssl=client_ssl
        )
        writer.write(b"GET /hang HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()

        await asyncio.sleep(0.3)
        self.assertEqual(self.server.proxy.get_full_stats()["active"], 1)

        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

        # the upstream sees its connection go away without waiting for a read timeout
        await asyncio.wait_for(self.upstream.app[UPSTREAM_RELEASED].wait(), timeout=5)

        for _ in range(50):
            if self.server.proxy.get_full_stats()["active"] == 0:
                break
            await asyncio.sleep(0.05)
        self.assertEqual(self.server.proxy.get_full_stats()["active"], 0)

    async def test_port_in_use_raises_bind_error(self):
        port = free_port()
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", port))
        blocker.listen(1)
        try:
            self.server = ProxyServer(self.make_config(port=port))
            with self.assertRaises(BindError) as ctx:
                await self.server.start()
            self.assertIn(str(port), str(ctx.exception))
            self.assertFalse(self.server.is_running)
        finally:
            blocker.close()

    async def test_invalid_certificate_raises_bind_error(self):
        bad_cert = Path(self.tmp.name) / "broken.pem"
        bad_cert.write_text("not a certificate")

        self.server = ProxyServer(self.make_config(cert_path=str(bad_cert)))
        with self.assertRaises(BindError):
            await self.server.start()
        self.assertFalse(self.server.is_running)

    async def test_stop_is_idempotent(self):
        self.server = ProxyServer(self.make_config())
        await self.server.start()
        await self.server.stop()
        await self.server.stop()
        self.assertFalse(self.server.is_running)
        self.assertIsNone(self.server.bound_port)

    async def test_upstream_health_probe(self):
        server = ProxyServer(self.make_config())
        health = await server.check_upstream_health()
        self.assertEqual(health["status"], "reachable")

        down = ProxyServer(self.make_config(upstream_url=f"http://127.0.0.1:{free_port()}"))
        health = await down.check_upstream_health()
        self.assertEqual(health["status"], "unreachable")
        self.assertIsNone(health["http_status"])


class TestSslContext(unittest.TestCase):

    def test_missing_files_raise_bind_error(self):
        with self.assertRaises(BindError):
            create_ssl_context("/nonexistent/cert.pem", "/nonexistent/key.pem")

    def test_mismatched_pair_raises_bind_error(self):
        with tempfile.TemporaryDirectory() as first, tempfile.TemporaryDirectory() as second:
            key_a, _ = write_self_signed_pair(first)
            _, cert_b = write_self_signed_pair(second)
            with self.assertRaises(BindError):
                create_ssl_context(cert_b, key_a)


if __name__ == "__main__":
    unittest.main()

# proxy_manager.py
import asyncio
import signal
import ssl
import logging
from aiohttp import (
    web, hdrs, ClientSession, TCPConnector, ClientTimeout, DummyCookieJar,
    ClientError, ClientConnectorError, ServerTimeoutError, WSServerHandshakeError,
)

from core.errors import BindError, UpstreamError
from core.proxy import (
    build_upstream_url,
    filter_request_headers,
    filter_response_headers,
    filter_websocket_headers,
    is_websocket_upgrade,
    relay_websocket,
    requested_protocols,
)
from utils.port_utils import describe_port_owner

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# заголовки, которые HTTP клиент добавил бы сам
SKIP_AUTO_HEADERS = (hdrs.USER_AGENT, hdrs.ACCEPT, hdrs.ACCEPT_ENCODING, hdrs.CONTENT_TYPE)


def _client_gone(request):
    transport = request.transport
    return transport is None or transport.is_closing()


class ForwardingProxy:
    def __init__(self, config):
        """
        Args:
            config: ProxyConfig с адресом upstream и таймаутами
        """
        self.config = config
        self.upstream_origin = config.upstream_origin

        # Connection pool к upstream
        self.connector = None
        self.session = None

        # Только для диагностики, при пересылке не читается
        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0
        }

    async def initialize(self):
        """Инициализация connection pool для upstream"""
        if self.connector is None:
            self.connector = TCPConnector(
                ssl=False,  # upstream без TLS
                limit=self.config.max_connections,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                force_close=False,
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(
                    total=None,  # долгие стримы и websocket
                    connect=self.config.connect_timeout,
                    sock_read=self.config.read_timeout,
                ),
                # тела пересылаются байт в байт, cookies не общие между клиентами
                auto_decompress=False,
                cookie_jar=DummyCookieJar(),
                skip_auto_headers=SKIP_AUTO_HEADERS,
            )

    async def cleanup(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def on_startup(self, app):
        await self.initialize()

    async def on_cleanup(self, app):
        await self.cleanup()

    async def handle_http(self, request):
        """Пересылает один клиентский запрос на upstream"""
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            if is_websocket_upgrade(request):
                return await self._proxy_websocket(request)
            return await self._proxy_to_upstream(request)
        except UpstreamError:
            self.stats['errors'] += 1
            raise
        finally:
            self.stats['active_connections'] -= 1

    async def _body_stream(self, request):
        async for chunk in request.content.iter_chunked(CHUNK_SIZE):
            yield chunk

    def _error_response(self, status, message):
        self.stats['errors'] += 1
        return web.Response(
            text=message,
            status=status,
            content_type="text/plain",
            charset="utf-8"
        )

    async def _proxy_to_upstream(self, request):
        # rel_url отбрасывает scheme/authority у absolute-form запроса, кодировка сохраняется
        path_qs = request.rel_url.raw_path_qs
        upstream_url = build_upstream_url(self.upstream_origin, path_qs)
        headers = filter_request_headers(request.headers, self.config.preserve_host)
        data = self._body_stream(request) if request.body_exists else None

        logger.debug(f"🔁 {request.method} {path_qs} -> {upstream_url}")

        await self.initialize()

        try:
            async with self.session.request(
                method=request.method,
                url=upstream_url,
                headers=headers,
                data=data,
                allow_redirects=False
            ) as upstream_response:

                response = web.StreamResponse(
                    status=upstream_response.status,
                    reason=upstream_response.reason,
                    headers=filter_response_headers(upstream_response.headers)
                )
                await response.prepare(request)

                try:
                    async for chunk in upstream_response.content.iter_chunked(CHUNK_SIZE):
                        await response.write(chunk)
                except ConnectionResetError:
                    raise
                except (ClientError, asyncio.TimeoutError) as e:
                    # статус уже отправлен клиенту, остается только оборвать соединение
                    raise UpstreamError(f"Upstream failed mid-response: {e}") from e

                await response.write_eof()

                self.stats['total_responses'] += 1
                logger.debug(f"{request.method} {path_qs} <- {upstream_response.status}")
                return response

        except UpstreamError as e:
            logger.error(f"❌ {request.method} {path_qs}: {e}")
            raise

        except ConnectionResetError as e:
            if _client_gone(request):
                logger.debug(f"Client disconnected: {request.method} {path_qs}")
                raise
            logger.error(f"❌ Upstream reset the connection for {request.method} {path_qs}: {e}")
            return self._error_response(502, f"Upstream error: {e}")

        except (ServerTimeoutError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Upstream timeout for {request.method} {path_qs}: {e}")
            return self._error_response(504, f"Upstream timed out: {self.upstream_origin}")

        except ClientConnectorError as e:
            logger.error(f"❌ Upstream недоступен: {e}")
            return self._error_response(502, f"Upstream unreachable: {self.upstream_origin}")

        except ClientError as e:
            logger.error(f"❌ Upstream error for {request.method} {path_qs}: {e}")
            return self._error_response(502, f"Upstream error: {e}")

    async def _proxy_websocket(self, request):
        path_qs = request.rel_url.raw_path_qs
        upstream_url = build_upstream_url(self.upstream_origin, path_qs).with_scheme('ws')
        headers = filter_websocket_headers(request.headers, self.config.preserve_host)

        logger.debug(f"🔌 WebSocket {path_qs} -> {upstream_url}")

        await self.initialize()

        try:
            upstream_ws = await self.session.ws_connect(
                upstream_url,
                headers=headers,
                protocols=requested_protocols(request),
                max_msg_size=0,
            )
        except WSServerHandshakeError as e:
            # upstream отказал в upgrade, отдаем его статус
            logger.warning(f"⚠️ Upstream refused WebSocket {path_qs}: {e.status}")
            status = e.status if e.status >= 400 else 502
            return self._error_response(status, f"Upstream refused WebSocket upgrade: {e.message}")
        except (ServerTimeoutError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Upstream timeout for WebSocket {path_qs}: {e}")
            return self._error_response(504, f"Upstream timed out: {self.upstream_origin}")
        except ClientError as e:
            logger.error(f"❌ Upstream unreachable for WebSocket {path_qs}: {e}")
            return self._error_response(502, f"Upstream unreachable: {self.upstream_origin}")

        async with upstream_ws:
            response = await relay_websocket(request, upstream_ws)

        self.stats['total_responses'] += 1
        return response

    async def router(self, request):
        """Маршрутизация всех запросов на upstream"""
        return await self.handle_http(request)

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors']
        }


def create_app(config, proxy=None):
    """Создает aiohttp приложение, которое пересылает все на upstream"""
    proxy = proxy or ForwardingProxy(config)

    app = web.Application()
    app.router.add_route('*', '/{path:.*}', proxy.router)
    app.on_startup.append(proxy.on_startup)
    app.on_cleanup.append(proxy.on_cleanup)
    return app


def create_ssl_context(cert_path, key_path) -> ssl.SSLContext:
    """Серверный TLS контекст из пары сертификат/ключ"""
    try:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    except (ssl.SSLError, OSError) as e:
        raise BindError(f"Cannot load TLS certificate {cert_path} / {key_path}: {e}") from e
    return ssl_context


class ProxyServer:
    def __init__(self, config):
        self.config = config
        self.is_running = False
        self.proxy = None
        self.runner = None
        self.site = None

    @property
    def bound_port(self):
        """Фактический порт (отличается от конфига, если запрошен порт 0)"""
        if self.runner is None or not self.runner.addresses:
            return None
        return self.runner.addresses[0][1]

    async def start(self):
        """
        Запускает TLS listener.

        Raises:
            BindError: сертификат не загружается или порт занят
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return

        ssl_context = create_ssl_context(self.config.cert_path, self.config.key_path)

        self.proxy = ForwardingProxy(self.config)
        app = create_app(self.config, self.proxy)

        self.runner = web.AppRunner(
            app,
            access_log=None,
            handler_cancellation=True,
            keepalive_timeout=self.config.keepalive_timeout,
        )
        await self.runner.setup()

        self.site = web.TCPSite(
            self.runner,
            host=self.config.host,
            port=self.config.port,
            ssl_context=ssl_context,
        )

        try:
            await self.site.start()
        except OSError as e:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            owner = describe_port_owner(self.config.port, self.config.host)
            detail = f" ({owner})" if owner else ""
            raise BindError(f"Cannot listen on {self.config.host}:{self.config.port}: {e}{detail}") from e

        self.is_running = True
        logger.info(f"HTTPS proxy listening on https://{self.config.host}:{self.bound_port}")
        logger.info(f"🌐 Forwarding to {self.config.upstream_origin}")

        health = await self.check_upstream_health()
        if health['status'] == 'reachable':
            logger.info(f"✅ Upstream answered with HTTP {health['http_status']}")
        else:
            logger.warning(f"⚠️ Upstream пока недоступен: {health['error']}")

    async def stop(self):
        """Останавливает listener и освобождает пул соединений"""
        if not self.is_running:
            return

        logger.info("🛑 Остановка прокси...")
        self.is_running = False

        if self.runner:
            # runner.cleanup() останавливает site и вызывает app.on_cleanup
            await self.runner.cleanup()
        self.runner = None
        self.site = None

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Статистика сессии:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}\n"
                f"   Active connections: {stats.get('active', 0)}"
            )

        logger.info("✅ Прокси остановлен")

    async def check_upstream_health(self):
        """
        Однократная проверка доступности upstream.

        Returns:
            dict: {
                'status': 'reachable'|'unreachable',
                'http_status': int or None,
                'error': str or None
            }
        """
        try:
            async with ClientSession(timeout=ClientTimeout(total=5)) as session:
                async with session.get(self.config.upstream_origin + '/', allow_redirects=False) as response:
                    return {
                        'status': 'reachable',
                        'http_status': response.status,
                        'error': None
                    }
        except (ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Upstream health check failed: {e}")
            return {
                'status': 'unreachable',
                'http_status': None,
                'error': str(e) or type(e).__name__
            }

    async def serve_forever(self):
        """Запускает прокси и работает до SIGINT/SIGTERM"""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # на Windows нет signal handlers, Ctrl+C придет как KeyboardInterrupt
                pass

        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()


def serve(config):
    """Запускает прокси с заданным конфигом до остановки процесса"""
    asyncio.run(ProxyServer(config).serve_forever())

# proxy_manager.py
import asyncio
import logging
import time
import threading
from typing import Optional

import requests
from aiohttp import web

from core.config_manager import ProxySettings, SearchSettings
from core.proxy.handler import ProxyHandler
from core.proxy.request_rewriter import RequestRewriter
from core.proxy.response_rewriter import ResponseRewriter
from core.proxy.transport import UpstreamTransport
from core.search_service import SearchService
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)


def build_proxy_handler(settings: ProxySettings) -> ProxyHandler:
    """Собирает ProxyHandler из неизменяемых настроек"""
    transport = UpstreamTransport(
        total_timeout=settings.total_timeout,
        connect_timeout=settings.connect_timeout,
        limit=settings.limit,
        limit_per_host=settings.limit_per_host,
        verify_ssl=settings.verify_ssl,
    )
    return ProxyHandler(
        request_rewriter=RequestRewriter(settings.origin, strip_accept_encoding=settings.rewrite_html),
        transport=transport,
        response_rewriter=ResponseRewriter(settings.rule_set, rewrite_html=settings.rewrite_html),
        chunk_size=settings.chunk_size,
    )


def create_proxy_app(handler: ProxyHandler) -> web.Application:
    """Приложение с единственным catch-all маршрутом"""
    app = web.Application()
    app.router.add_route('*', '/{path:.*}', handler.handle)

    async def on_startup(app):
        await handler.transport.initialize()

    async def on_cleanup(app):
        await handler.transport.cleanup()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


class ProxyManager:
    def __init__(self, settings: ProxySettings, search_settings: Optional[SearchSettings] = None):
        self.settings = settings
        self.search_settings = search_settings
        self.is_running = False
        self.handler: Optional[ProxyHandler] = None
        self.runners = []
        self.loop = None
        self.thread = None
        self._started = threading.Event()

        # Error tracking
        self.last_error_type = None  # 'port', 'server', 'origin'
        self.last_error_details = None

    def _ports(self):
        ports = [(self.settings.local_host, self.settings.local_port)]
        if self.search_settings and self.search_settings.enabled:
            ports.append((self.search_settings.local_host, self.search_settings.local_port))
        return ports

    def _check_ports(self) -> bool:
        """Проверка что порты свободны. Чужие процессы не завершаются"""
        for host, port in self._ports():
            port_available, port_message = check_port_availability(port, host)
            if port_available:
                continue

            # port_message уже содержит процесс-владелец (если он найден)
            logger.error(f"❌ {port_message}")
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False
        return True

    def start(self, timeout: float = 5) -> bool:
        """
        Запуск прокси сервера в отдельном потоке со своим event loop

        Args:
            timeout: сколько ждать запуска сервера (секунды)

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Proxy is already running")
            return False

        if not self._check_ports():
            return False

        self._started.clear()
        self.thread = threading.Thread(target=self._run_server, daemon=True)
        self.thread.start()

        self._started.wait(timeout)
        if not self.is_running:
            logger.error("❌ Proxy did not start in time")
            if not self.last_error_type:
                self.last_error_type = 'server'
                self.last_error_details = 'Server did not start in time'
            return False

        logger.info(
            f"✅ Proxy server started on http://{self.settings.local_host}:{self.settings.local_port}"
            f" → {self.settings.origin}"
        )

        logger.info("🌐 Checking origin availability...")
        if not self._check_origin_status():
            logger.warning("⚠️ Origin check failed, but proxy is running")

        return True

    def _run_server(self):
        """Запускает сервер в отдельном event loop"""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            if self.loop.run_until_complete(self._start_server()):
                # start() просыпается только когда loop уже крутится
                self.loop.call_soon(self._started.set)
                self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Event loop error: {e}", exc_info=True)
            self.is_running = False
        finally:
            self._started.set()
            if self.loop:
                # Сайты, не закрытые через stop(), освобождают порты здесь
                if self.runners:
                    self.loop.run_until_complete(self._stop_server())
                self.loop.close()

    async def _start_server(self) -> bool:
        """
        Асинхронный запуск сервера

        Returns:
            bool: True если все сайты слушают свои порты
        """
        try:
            self.handler = build_proxy_handler(self.settings)
            await self._start_site(
                create_proxy_app(self.handler),
                self.settings.local_host,
                self.settings.local_port,
            )

            if self.search_settings and self.search_settings.enabled:
                search = SearchService(self.search_settings)
                await self._start_site(
                    search.create_app(),
                    self.search_settings.local_host,
                    self.search_settings.local_port,
                )
                logger.info(
                    f"🔎 Autocomplete on port {self.search_settings.local_port}"
                    f" → {self.search_settings.es_url}"
                )

            self.is_running = True
            logger.info(
                f"📊 Connection pool: limit={self.settings.limit}, "
                f"per_host={self.settings.limit_per_host}"
            )
            return True

        except Exception as e:
            logger.error(f"❌ Server start failed: {e}")
            self.last_error_type = 'server'
            self.last_error_details = str(e)
            await self._stop_server()
            self.is_running = False
            return False

    async def _start_site(self, app: web.Application, host: str, port: int):
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        self.runners.append(runner)

        site = web.TCPSite(runner, host=host, port=port)
        await site.start()

    def _check_origin_status(self) -> bool:
        """
        Проверяет доступность origin (HEAD /, без перехода по редиректам)

        Returns:
            bool: True если origin ответил
        """
        origin_url = f"{self.settings.origin.url}/"

        try:
            response = requests.head(
                origin_url,
                timeout=10,
                allow_redirects=False,
                verify=self.settings.verify_ssl,
            )
            logger.info(f"✅ Origin is reachable: {origin_url} → HTTP {response.status_code}")
            return True

        except requests.ConnectionError as e:
            logger.error(
                f"❌ Cannot connect to origin!\n"
                f"   URL: {origin_url}\n"
                f"   Error: {e}"
            )
            self.last_error_type = 'origin'
            self.last_error_details = "Cannot connect to origin"
            return False
        except requests.Timeout:
            logger.error("❌ Origin check timed out (>10s)")
            self.last_error_type = 'origin'
            self.last_error_details = "Origin connection timeout"
            return False
        except requests.RequestException as e:
            logger.error(f"❌ Origin check error: {e}")
            self.last_error_type = 'origin'
            self.last_error_details = str(e)
            return False

    def stop(self):
        """Остановка прокси сервера"""
        if not self.is_running:
            logger.warning("⚠️ Proxy is not running")
            return

        logger.info("🛑 Stopping proxy...")
        self.is_running = False

        if self.loop and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
            try:
                future.result(timeout=5)
            except Exception as e:
                logger.error(f"❌ Error stopping server: {e}")

        if self.loop and not self.loop.is_closed():
            try:
                self.loop.call_soon_threadsafe(self.loop.stop)
            except RuntimeError:
                # loop закрылся между проверкой и вызовом
                logger.debug("Event loop already closed")

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        stats = self.get_proxy_stats()
        if stats:
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Rewritten: {stats.get('rewritten', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}"
            )

        logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        """Асинхронная остановка сервера (runner.cleanup закрывает и transport)"""
        while self.runners:
            runner = self.runners.pop()
            await runner.cleanup()
        logger.debug("✅ Server stopped")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'port': self.settings.local_port,
            'origin': self.settings.origin.url,
            'rewrite_html': self.settings.rewrite_html,
        }

        if self.last_error_type:
            status['last_error'] = {
                'type': self.last_error_type,
                'details': self.last_error_details,
            }

        stats = self.get_proxy_stats()
        if stats:
            status['proxy_stats'] = stats

        return status

    def get_proxy_stats(self):
        """Получить детальную статистику прокси"""
        if self.handler:
            return self.handler.get_full_stats()
        return None

    def wait(self, poll_interval: float = 0.5):
        """Блокирует до остановки сервера (Ctrl+C прерывает ожидание)"""
        while self.is_running and self.thread and self.thread.is_alive():
            time.sleep(poll_interval)

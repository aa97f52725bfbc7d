# core/proxy/transport.py
import asyncio
import logging
from typing import Optional

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout, DummyCookieJar, TCPConnector

from core.proxy.errors import TransportError
from core.proxy.request_rewriter import OutboundRequest

logger = logging.getLogger(__name__)


class UpstreamResponse:
    """
    Ответ origin: статус, заголовки и поток тела.

    Тело читается ровно один раз: либо копируется клиенту, либо вычитывается
    целиком для перезаписи.
    """

    def __init__(self, response: ClientResponse):
        self._response = response
        self.status = response.status
        self.reason = response.reason
        self.headers = response.headers
        self.content = response.content
        self.method = response.method

    async def read(self) -> bytes:
        return await self.content.read()

    async def read_chunk(self, chunk_size: int) -> bytes:
        """До chunk_size байт тела, b'' в конце потока"""
        return await self.content.read(chunk_size)

    def release(self):
        """Возвращает соединение в пул (тело дочитано)"""
        self._response.release()

    def close(self):
        """Закрывает соединение с origin (обрыв, отмена, ошибка клиента)"""
        self._response.close()


class UpstreamTransport:
    """Единый долгоживущий клиент к origin, 3xx не преследуются"""

    def __init__(
        self,
        total_timeout: float = 90,
        connect_timeout: float = 10,
        limit: int = 100,
        limit_per_host: int = 50,
        verify_ssl: bool = True,
    ):
        self.total_timeout = total_timeout
        self.connect_timeout = connect_timeout
        self.limit = limit
        self.limit_per_host = limit_per_host
        self.verify_ssl = verify_ssl

        # Connection pool для переиспользования соединений
        self.connector: Optional[TCPConnector] = None
        self.session: Optional[ClientSession] = None

    async def initialize(self):
        """Инициализация connection pool для origin"""
        if self.connector is None:
            self.connector = TCPConnector(
                ssl=self.verify_ssl,
                limit=self.limit,
                limit_per_host=self.limit_per_host,
                ttl_dns_cache=300,  # DNS кэш на 5 минут
                keepalive_timeout=60,
                force_close=False,
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.total_timeout, connect=self.connect_timeout),
                # Тело должно дойти до клиента байт в байт
                auto_decompress=False,
                # Cookie клиентов не должны копиться в общей сессии
                cookie_jar=DummyCookieJar(),
            )

    async def cleanup(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def send(self, outbound: OutboundRequest) -> UpstreamResponse:
        """
        Отправляет запрос на origin и ждет заголовки ответа

        Args:
            outbound: запрос к origin

        Returns:
            UpstreamResponse: ответ с непрочитанным телом

        Raises:
            TransportError: DNS / соединение / таймаут
        """
        await self.initialize()

        try:
            response = await self.session.request(
                method=outbound.method,
                url=outbound.url,
                headers=outbound.headers,
                data=outbound.body,
                allow_redirects=False,
                skip_auto_headers=outbound.skip_auto_headers,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"❌ Timeout calling origin {outbound.url}")
            raise TransportError(f"Timeout calling {outbound.url.host}", e) from e
        except (ClientError, OSError) as e:
            logger.error(f"❌ Failed to call origin {outbound.url}: {e}")
            raise TransportError(f"Failed to call {outbound.url.host}", e) from e

        logger.debug(f"Origin response: {response.status} for {outbound.method} {outbound.url}")
        return UpstreamResponse(response)

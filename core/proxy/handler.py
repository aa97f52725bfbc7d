# core/proxy/handler.py
import asyncio
import logging
from enum import Enum

from aiohttp import ClientConnectionError, ClientPayloadError, web

from core.proxy.errors import BodyReadError, ClientWriteError, ProxyError
from core.proxy.request_rewriter import InboundRequest, RequestRewriter
from core.proxy.response_rewriter import ResponseRewriter, RewrittenResponse
from core.proxy.transport import UpstreamResponse, UpstreamTransport

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class ProxyState(Enum):
    RECEIVED = 'received'
    REQUEST_BUILT = 'request_built'
    UPSTREAM_SENT = 'upstream_sent'
    RESPONSE_REWRITTEN = 'response_rewritten'
    FLUSHED = 'flushed'
    FAILED = 'failed'


class ProxyHandler:
    """Обработка одного запроса: build → send → rewrite → write"""

    def __init__(
        self,
        request_rewriter: RequestRewriter,
        transport: UpstreamTransport,
        response_rewriter: ResponseRewriter,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.request_rewriter = request_rewriter
        self.transport = transport
        self.response_rewriter = response_rewriter
        self.chunk_size = chunk_size

        # Статистика
        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'rewritten': 0,
            'errors': 0
        }

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Точка входа aiohttp для всех путей"""
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            return await self._proxy(request)
        finally:
            self.stats['active_connections'] -= 1

    async def _proxy(self, request: web.Request) -> web.StreamResponse:
        state = ProxyState.RECEIVED

        try:
            outbound = self.request_rewriter.rewrite(InboundRequest.from_web_request(request))
            state = ProxyState.REQUEST_BUILT

            logger.info(f"Proxying: {outbound.method} {outbound.url}")
            upstream = await self.transport.send(outbound)
            state = ProxyState.UPSTREAM_SENT
        except ProxyError as e:
            return self._error_response(e, state)

        try:
            rewritten = await self.response_rewriter.rewrite(upstream)
        except BodyReadError as e:
            upstream.close()
            return self._error_response(e, state)
        except BaseException:
            upstream.close()
            raise
        state = ProxyState.RESPONSE_REWRITTEN

        if not rewritten.is_streaming:
            upstream.release()
            self.stats['rewritten'] += 1
            self.stats['total_responses'] += 1
            logger.debug(f"{state.value} → {ProxyState.FLUSHED.value}: {request.path} ({rewritten.status})")
            return web.Response(
                status=rewritten.status,
                reason=rewritten.reason,
                headers=rewritten.headers,
                body=rewritten.body,
            )

        return await self._stream(request, rewritten)

    async def _stream(self, request: web.Request, rewritten: RewrittenResponse) -> web.StreamResponse:
        """
        Копирует тело origin клиенту порциями по chunk_size

        После prepare() статус уже отправлен: ошибки чтения origin закрывают
        соединение с клиентом, повторов нет.
        """
        upstream: UpstreamResponse = rewritten.stream
        response = web.StreamResponse(
            status=rewritten.status,
            reason=rewritten.reason,
            headers=rewritten.headers,
        )

        completed = False
        try:
            try:
                await response.prepare(request)
                while True:
                    try:
                        chunk = await upstream.read_chunk(self.chunk_size)
                    except (ClientPayloadError, ClientConnectionError, asyncio.TimeoutError) as e:
                        raise BodyReadError("Origin body stream broken", e) from e
                    if not chunk:
                        break
                    try:
                        await response.write(chunk)
                    except (ConnectionResetError, ClientConnectionError) as e:
                        raise ClientWriteError("Client disconnected", e) from e
                await response.write_eof()
            except (ConnectionResetError, ClientConnectionError) as e:
                raise ClientWriteError("Client disconnected", e) from e

            completed = True
            self.stats['total_responses'] += 1
            logger.debug(f"{ProxyState.FLUSHED.value}: {request.path} ({rewritten.status})")

        except BodyReadError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ {e} ({request.method} {request.path}), closing client connection")
            if request.transport is not None:
                request.transport.close()

        except ClientWriteError as e:
            self.stats['errors'] += 1
            logger.warning(f"⚠️ {e} ({request.method} {request.path}), copy aborted")

        finally:
            if completed:
                upstream.release()
            else:
                upstream.close()

        return response

    def _error_response(self, error: ProxyError, state: ProxyState) -> web.Response:
        """Ответ клиенту для ошибки до отправки заголовков"""
        self.stats['errors'] += 1
        status = error.status or 502
        logger.error(f"❌ {type(error).__name__} in state {state.value} → {ProxyState.FAILED.value}: {error}")

        return web.Response(
            text=f"Proxy error: {error.message}\n",
            status=status,
            content_type='text/plain',
            charset='utf-8'
        )

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'rewritten': self.stats['rewritten'],
            'errors': self.stats['errors']
        }

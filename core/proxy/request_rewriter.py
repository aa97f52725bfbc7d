# core/proxy/request_rewriter.py
"""Преобразование входящего запроса в запрос к origin"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from aiohttp import hdrs, web
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from core.proxy.errors import RequestBuildError
from core.proxy.rules import Origin

logger = logging.getLogger(__name__)

# Hop-by-hop заголовки (RFC 7230, 6.1) не пересылаются ни в одну сторону
HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-connection',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})

_INVALID_TARGET_CHARS = re.compile(r'[\x00-\x20\x7f]')


def strip_hop_by_hop(headers) -> CIMultiDict:
    """
    Копирует заголовки без hop-by-hop полей (включая перечисленные в Connection)

    Args:
        headers: multi-map заголовков

    Returns:
        CIMultiDict: копия с сохранением порядка и повторяющихся значений
    """
    extra = set()
    for value in headers.getall(hdrs.CONNECTION, []):
        extra.update(token.strip().lower() for token in value.split(',') if token.strip())

    result = CIMultiDict()
    for key, value in headers.items():
        key_lower = key.lower()
        if key_lower in HOP_BY_HOP_HEADERS or key_lower in extra:
            continue
        result.add(key, value)
    return result


@dataclass
class InboundRequest:
    """Входящий запрос клиента (живет только в рамках одного обмена)"""

    method: str
    path: str
    query: str = ""
    headers: CIMultiDictProxy = field(default_factory=lambda: CIMultiDictProxy(CIMultiDict()))
    body: Optional[Any] = None

    @classmethod
    def from_web_request(cls, request: web.Request) -> "InboundRequest":
        """Снимок aiohttp запроса. Путь и query остаются в закодированном виде"""
        return cls(
            method=request.method,
            path=request.rel_url.raw_path,
            query=request.rel_url.raw_query_string,
            headers=request.headers,
            body=request.content if request.body_exists else None,
        )


@dataclass
class OutboundRequest:
    """Запрос к origin, собранный из InboundRequest"""

    method: str
    url: URL
    headers: CIMultiDict
    body: Optional[Any] = None
    skip_auto_headers: Tuple[str, ...] = ()


class RequestRewriter:
    """Переносит входящий запрос на origin"""

    def __init__(self, origin: Origin, strip_accept_encoding: bool = True):
        """
        Args:
            origin: upstream сервер
            strip_accept_encoding: убирать Accept-Encoding (нужно для перезаписи HTML)
        """
        self.origin = origin
        self.strip_accept_encoding = strip_accept_encoding

    def build_url(self, path: str, query: str = "") -> URL:
        """
        Собирает URL {scheme}://{host}{path}?{query}

        Raises:
            RequestBuildError: путь некорректен или URL не разбирается
        """
        if not path.startswith('/'):
            raise RequestBuildError(f"Invalid request path {path!r}")
        if _INVALID_TARGET_CHARS.search(path) or _INVALID_TARGET_CHARS.search(query):
            raise RequestBuildError(f"Invalid characters in request target {path!r}")

        raw = f"{self.origin.scheme}://{self.origin.host}{path}"
        if query:
            raw = f"{raw}?{query}"

        try:
            url = URL(raw, encoded=True)
        except (ValueError, TypeError) as e:
            raise RequestBuildError(f"Cannot build upstream URL from {path!r}", e) from e

        if url.host is None:
            raise RequestBuildError(f"Upstream URL {raw!r} has no host")
        return url

    def rewrite(self, inbound: InboundRequest) -> OutboundRequest:
        """
        Строит OutboundRequest

        Метод и поток тела переносятся как есть (тело здесь не читается),
        Host принудительно равен origin.host.

        Args:
            inbound: входящий запрос

        Returns:
            OutboundRequest

        Raises:
            RequestBuildError: если URL собрать нельзя
        """
        url = self.build_url(inbound.path, inbound.query)

        headers = strip_hop_by_hop(inbound.headers)
        headers[hdrs.HOST] = self.origin.host

        skip_auto_headers: Tuple[str, ...] = ()
        if self.strip_accept_encoding:
            headers.popall(hdrs.ACCEPT_ENCODING, None)
            # aiohttp сам добавляет Accept-Encoding, если его нет
            skip_auto_headers = (hdrs.ACCEPT_ENCODING,)

        if inbound.body is None:
            headers.popall(hdrs.CONTENT_LENGTH, None)

        return OutboundRequest(
            method=inbound.method,
            url=url,
            headers=headers,
            body=inbound.body,
            skip_auto_headers=skip_auto_headers,
        )

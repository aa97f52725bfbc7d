# core/proxy/response_rewriter.py
"""Модуль для перезаписи ответов origin (Location и HTML)"""

import asyncio
import codecs
import logging
from dataclasses import dataclass
from typing import Optional

from aiohttp import ClientConnectionError, ClientPayloadError, hdrs
from multidict import CIMultiDict

from core.proxy.errors import BodyReadError
from core.proxy.request_rewriter import strip_hop_by_hop
from core.proxy.rules import RewriteRuleSet
from core.proxy.transport import UpstreamResponse

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPE = 'text/html'
DEFAULT_CHARSET = 'utf-8'


def get_charset(content_type: str, default: str = DEFAULT_CHARSET) -> str:
    """
    Извлекает charset из Content-Type

    Args:
        content_type: значение заголовка, например "text/html; charset=ISO-8859-1"
        default: кодировка, если charset не указан или неизвестен

    Returns:
        str: имя кодировки, известное codecs
    """
    for param in content_type.split(';')[1:]:
        name, _, value = param.partition('=')
        if name.strip().lower() != 'charset':
            continue
        charset = value.strip().strip('"\'')
        try:
            return codecs.lookup(charset).name
        except LookupError:
            logger.debug(f"Unknown charset {charset!r}, falling back to {default}")
            return default
    return default


def is_html(content_type: str) -> bool:
    return content_type.strip().lower().startswith(HTML_CONTENT_TYPE)


def is_ascii_compatible(charset: str) -> bool:
    """ASCII символы URL кодируются в charset теми же байтами (не так для utf-16/32)"""
    try:
        return 'https://'.encode(charset) == b'https://'
    except (LookupError, UnicodeError):
        return False


@dataclass
class RewrittenResponse:
    """Ответ для клиента: либо готовое тело (body), либо живой поток (stream)"""

    status: int
    headers: CIMultiDict
    body: Optional[bytes] = None
    stream: Optional[UpstreamResponse] = None
    reason: Optional[str] = None

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None


class ResponseRewriter:
    """Перезапись ответа: Location всегда, тело только для text/html"""

    def __init__(self, rule_set: RewriteRuleSet, rewrite_html: bool = True):
        """
        Args:
            rule_set: правила перезаписи
            rewrite_html: перезаписывать ли тела text/html
        """
        self.rule_set = rule_set
        self.rewrite_html = rewrite_html

    def rewrite_headers(self, headers) -> CIMultiDict:
        """
        Копирует заголовки ответа без hop-by-hop и перезаписывает Location

        Returns:
            CIMultiDict: новые заголовки
        """
        result = strip_hop_by_hop(headers)

        locations = result.popall(hdrs.LOCATION, [])
        for location in locations:
            if location:
                new_location = self.rule_set.rewrite_location(location)
                if new_location != location:
                    logger.debug(f"Location: {location} → {new_location}")
                location = new_location
            result.add(hdrs.LOCATION, location)

        return result

    def should_rewrite_body(self, upstream: UpstreamResponse) -> bool:
        """Тело перезаписывается только для несжатого text/html"""
        if not self.rewrite_html:
            return False

        # У HEAD / 204 / 304 тела нет, Content-Length origin должен остаться
        if upstream.method == 'HEAD' or upstream.status in (204, 304):
            return False

        headers = upstream.headers
        content_type = headers.get(hdrs.CONTENT_TYPE, '')
        if not is_html(content_type):
            return False

        charset = get_charset(content_type)
        if not is_ascii_compatible(charset):
            logger.debug(f"HTML body is {charset}, passing through")
            return False

        encoding = headers.get(hdrs.CONTENT_ENCODING, '').strip().lower()
        if encoding not in ('', 'identity'):
            # origin проигнорировал отсутствие Accept-Encoding
            logger.debug(f"HTML body is {encoding}-encoded, passing through")
            return False

        return True

    def rewrite_text(self, body: bytes, content_type: str) -> bytes:
        """
        Заменяет абсолютные префиксы origin в HTML

        Недекодируемые байты сохраняются как есть (surrogateescape).
        Если заменять нечего, возвращается исходный body.
        """
        charset = get_charset(content_type)
        try:
            text = body.decode(charset, errors='surrogateescape')
            new_text = self.rule_set.apply(text)
            if new_text == text:
                return body
            return new_text.encode(charset, errors='surrogateescape')
        except UnicodeError as e:
            logger.warning(f"⚠️ Cannot rewrite {charset} HTML body, passing it unchanged: {e}")
            return body

    async def rewrite(self, upstream: UpstreamResponse) -> RewrittenResponse:
        """
        Перезаписывает ответ origin

        Args:
            upstream: ответ origin с непрочитанным телом

        Returns:
            RewrittenResponse: статус не меняется никогда

        Raises:
            BodyReadError: тело HTML не удалось дочитать
        """
        headers = self.rewrite_headers(upstream.headers)

        if not self.should_rewrite_body(upstream):
            return RewrittenResponse(
                status=upstream.status,
                headers=headers,
                stream=upstream,
                reason=upstream.reason,
            )

        try:
            body = await upstream.read()
        except (ClientPayloadError, ClientConnectionError, asyncio.TimeoutError) as e:
            raise BodyReadError("Failed to read HTML body from origin", e) from e

        content_type = upstream.headers.get(hdrs.CONTENT_TYPE, '')
        new_body = self.rewrite_text(body, content_type)

        headers[hdrs.CONTENT_LENGTH] = str(len(new_body))
        headers.popall(hdrs.TRANSFER_ENCODING, None)

        logger.debug(f"HTML rewritten: {len(body)} → {len(new_body)} bytes")

        return RewrittenResponse(
            status=upstream.status,
            headers=headers,
            body=new_body,
            reason=upstream.reason,
        )

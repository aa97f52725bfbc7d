# core/proxy/errors.py
"""Ошибки обработки одного проксируемого запроса"""

from typing import Optional


class ProxyError(Exception):
    """Базовая ошибка прокси. status - HTTP код ответа клиенту (None если ответить уже нельзя)"""

    status: Optional[int] = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self):
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class RequestBuildError(ProxyError):
    """Не удалось собрать запрос к upstream (origin не вызывается)"""

    status = 500


class TransportError(ProxyError):
    """DNS / connect / timeout / origin недоступен"""

    status = 502


class BodyReadError(ProxyError):
    """Поток тела ответа от origin оборвался"""

    status = 502


class ClientWriteError(ProxyError):
    """Клиент отключился во время записи ответа"""

    status = None

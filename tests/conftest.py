# tests/conftest.py
import os
import socket
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest
from multidict import CIMultiDict, CIMultiDictProxy

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class FakeUpstream:
    """Подмена UpstreamResponse: тело отдается из списка порций"""

    def __init__(self, status=200, headers=None, chunks=(), method='GET', reason='OK'):
        self.status = status
        self.reason = reason
        self.method = method
        self.headers = CIMultiDictProxy(CIMultiDict(headers or []))
        self._chunks = list(chunks)
        self.read_chunk = AsyncMock(side_effect=self._read_chunk)
        self.read = AsyncMock(side_effect=self._read)
        self.release = MagicMock()
        self.close = MagicMock()

    async def _read_chunk(self, chunk_size):
        if not self._chunks:
            return b''
        item = self._chunks.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def _read(self):
        body = b''
        while self._chunks:
            body += await self._read_chunk(0)
        return body


@pytest.fixture
def fake_upstream():
    return FakeUpstream


@pytest.fixture(autouse=True)
def app_data_dir(tmp_path, monkeypatch):
    """config.json и логи тестов живут во временной папке"""
    monkeypatch.setenv('RELAY_PROXY_HOME', str(tmp_path / 'app_data'))
    for name in ('PORT', 'ORIGIN_URL', 'ES_URLS', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / 'app_data'


@pytest.fixture
def closed_port():
    """Порт, на котором гарантированно никто не слушает"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]

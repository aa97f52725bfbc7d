# core/search_service.py
"""
Сервис автодополнения поверх completion suggester поискового backend.

Прокси от него не зависит: это отдельное aiohttp приложение на своем порту.
"""

import asyncio
import logging
import socket
from typing import List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, web

from core.config_manager import SearchSettings

logger = logging.getLogger(__name__)

INDEX_HTML = """<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Autocomplete</title>
</head>
<body>
  <h1>Autocomplete</h1>
  <input id="q" placeholder="type prefix..." />
  <pre id="out"></pre>

<script>
const input = document.getElementById("q");
const out = document.getElementById("out");

let t = null;
input.addEventListener("input", () => {
  const q = input.value.trim();
  if (t) clearTimeout(t);
  if (!q) { out.textContent = ""; return; }

  t = setTimeout(async () => {
    const r = await fetch("/autocomplete?q=" + encodeURIComponent(q));
    const j = await r.json();
    out.textContent = JSON.stringify(j, null, 2);
  }, 120);
});
</script>
</body>
</html>
"""


class SearchBackendError(Exception):
    """Ошибка обращения к поисковому backend"""

    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.status = status


def build_suggest_query(name: str, prefix: str, field: str, size: int, skip_duplicates: bool) -> dict:
    """Тело запроса completion suggester"""
    return {
        'suggest': {
            name: {
                'prefix': prefix,
                'completion': {
                    'field': field,
                    'size': size,
                    'skip_duplicates': skip_duplicates,
                },
            },
        },
    }


def extract_suggestions(data: dict, name: str) -> List[str]:
    """
    Достает варианты из suggest[name][0].options[*].text

    Отсутствующие или пустые разделы дают пустой список.
    """
    entries = (data.get('suggest') or {}).get(name) or []
    if not entries:
        return []

    suggestions = []
    for option in entries[0].get('options') or []:
        text = option.get('text')
        if text is not None:
            suggestions.append(text)
    return suggestions


class SearchService:
    """Endpoint /autocomplete и страница с полем ввода"""

    def __init__(self, settings: SearchSettings):
        self.settings = settings
        self.session: Optional[ClientSession] = None
        self.hostname = socket.gethostname() or 'unknown'

    async def initialize(self):
        if self.session is None:
            self.session = ClientSession(timeout=ClientTimeout(total=self.settings.timeout))

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def suggest(self, prefix: str) -> List[str]:
        """
        Запрашивает варианты автодополнения

        Args:
            prefix: введенный пользователем префикс

        Returns:
            List[str]: варианты (не более settings.size)

        Raises:
            SearchBackendError: backend недоступен, вернул ошибку или не-JSON
        """
        await self.initialize()

        s = self.settings
        url = f"{s.es_url}/{s.index}/_search"
        body = build_suggest_query(s.suggest_name, prefix, s.field, s.size, s.skip_duplicates)

        try:
            async with self.session.post(url, json=body) as response:
                if response.status >= 300:
                    raw = await response.text(errors='replace')
                    raise SearchBackendError(
                        f"Search backend returned {response.status} {response.reason}: {raw}"
                    )
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise SearchBackendError(f"Failed to decode search backend response: {e}", status=500)
        except (ClientError, asyncio.TimeoutError) as e:
            raise SearchBackendError(f"Failed to call search backend: {e}")

        if not isinstance(data, dict):
            raise SearchBackendError("Unexpected search backend response", status=500)

        return extract_suggestions(data, s.suggest_name)

    async def index(self, request: web.Request) -> web.Response:
        return web.Response(text=INDEX_HTML, content_type='text/html', charset='utf-8')

    async def autocomplete(self, request: web.Request) -> web.Response:
        """GET /autocomplete?q=<prefix>"""
        query = request.query.get('q', '').strip()
        if not query:
            return web.Response(text="missing query parameter ?q=\n", status=400)

        try:
            suggestions = await self.suggest(query)
        except SearchBackendError as e:
            logger.error(f"❌ Autocomplete failed for {query!r}: {e}")
            return web.Response(text=f"{e}\n", status=e.status)

        logger.debug(f"Autocomplete {query!r}: {len(suggestions)} suggestions")
        return web.json_response({
            'host': self.hostname,
            'query': query,
            'suggestions': suggestions,
        })

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/', self.index)
        app.router.add_get('/autocomplete', self.autocomplete)

        async def on_cleanup(app):
            await self.cleanup()

        app.on_cleanup.append(on_cleanup)
        return app

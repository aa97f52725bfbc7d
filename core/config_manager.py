import json
import sys
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional
import os

from core.proxy.rules import Origin, RewriteRuleSet

logger = logging.getLogger(__name__)


def get_app_data_dir():
    """Возвращает путь для хранения данных приложения (логи, config.json)"""
    override = os.getenv('RELAY_PROXY_HOME')
    if override:
        app_data_dir = Path(override)
    elif getattr(sys, 'frozen', False):
        if os.name == 'nt':  # Windows
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / 'RelayProxy'
        else:  # Linux/Mac
            app_data_dir = Path.home() / '.config' / 'relay_proxy'
    else:
        # Dev режим
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


def parse_port(value) -> int:
    """Принимает 8080, "8080" или ":8080" """
    text = str(value).strip()
    if text.startswith(':'):
        text = text[1:]
    try:
        port = int(text)
    except ValueError:
        raise ValueError(f"Invalid port: {value!r}")
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range: {port}")
    return port


@dataclass(frozen=True)
class ProxySettings:
    """Неизменяемые настройки прокси, создаются один раз при старте"""

    origin: Origin
    rule_set: RewriteRuleSet
    local_host: str = '0.0.0.0'
    local_port: int = 8080
    rewrite_html: bool = True
    total_timeout: float = 90
    connect_timeout: float = 10
    limit: int = 100
    limit_per_host: int = 50
    verify_ssl: bool = True
    chunk_size: int = 64 * 1024


@dataclass(frozen=True)
class SearchSettings:
    """Настройки сервиса автодополнения"""

    enabled: bool = False
    local_host: str = '0.0.0.0'
    local_port: int = 8081
    es_url: str = 'http://localhost:9200'
    index: str = 'movies'
    suggest_name: str = 'movie-suggest'
    field: str = 'suggest'
    size: int = 5
    skip_duplicates: bool = True
    timeout: float = 10


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """
        Args:
            config_path: путь к config.json (по умолчанию в app data)
            environ: переменные окружения (по умолчанию os.environ)
        """
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()
        self._apply_environment(os.environ if environ is None else environ)

    def _get_config_path(self) -> Path:
        """Возвращает путь к файлу конфигурации"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        return {
            'proxy': {
                'local_host': '0.0.0.0',
                'local_port': 8080,
                'origin_url': 'https://www.google.com',
                'rewrite_html': True,
                'rewrite_protocol_relative': True,
                'verify_ssl': True,
                'chunk_size': 64 * 1024,
                'timeout': {
                    'total': 90,
                    'connect': 10,
                },
                'pool': {
                    'limit': 100,
                    'limit_per_host': 50,
                },
            },

            'search': {
                'enabled': False,
                'local_host': '0.0.0.0',
                'local_port': 8081,
                'es_urls': 'http://localhost:9200',
                'index': 'movies',
                'suggest_name': 'movie-suggest',
                'field': 'suggest',
                'size': 5,
                'skip_duplicates': True,
                'timeout': 10,
            },

            'logging': {
                'level': 'INFO',
                'file': True,
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает конфигурацию из файла"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    # Объединяем с дефолтными значениями
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Ошибка загрузки конфига {self.config_path}: {e}")

        return default_config

    def _apply_environment(self, environ: Dict[str, str]):
        """PORT, ORIGIN_URL, ES_URLS, LOG_LEVEL перекрывают файл"""
        mapping = {
            'PORT': 'proxy.local_port',
            'ORIGIN_URL': 'proxy.origin_url',
            'ES_URLS': 'search.es_urls',
            'LOG_LEVEL': 'logging.level',
        }
        for env_name, key in mapping.items():
            value = (environ.get(env_name) or '').strip()
            if value:
                logger.debug(f"{env_name} overrides {key}")
                self.set(key, value)

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное объединение словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Получает значение по ключу (dot notation)"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """Устанавливает значение по ключу (dot notation)"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

    def get_proxy_settings(self) -> ProxySettings:
        """
        Собирает ProxySettings

        Raises:
            ValueError: некорректный порт или origin
        """
        origin = Origin.parse(self.get('proxy.origin_url'))
        rule_set = RewriteRuleSet.for_origin(
            origin,
            protocol_relative=_as_bool(self.get('proxy.rewrite_protocol_relative', True)),
        )

        return ProxySettings(
            origin=origin,
            rule_set=rule_set,
            local_host=self.get('proxy.local_host', '0.0.0.0'),
            local_port=parse_port(self.get('proxy.local_port')),
            rewrite_html=_as_bool(self.get('proxy.rewrite_html', True)),
            total_timeout=float(self.get('proxy.timeout.total', 90)),
            connect_timeout=float(self.get('proxy.timeout.connect', 10)),
            limit=int(self.get('proxy.pool.limit', 100)),
            limit_per_host=int(self.get('proxy.pool.limit_per_host', 50)),
            verify_ssl=_as_bool(self.get('proxy.verify_ssl', True)),
            chunk_size=int(self.get('proxy.chunk_size', 64 * 1024)),
        )

    def get_search_settings(self) -> SearchSettings:
        """Собирает SearchSettings. Из ES_URLS берется первый адрес"""
        raw = str(self.get('search.es_urls') or '').strip() or 'http://localhost:9200'
        es_url = raw.split(',')[0].strip().rstrip('/')

        return SearchSettings(
            enabled=_as_bool(self.get('search.enabled', False)),
            local_host=self.get('search.local_host', '0.0.0.0'),
            local_port=parse_port(self.get('search.local_port')),
            es_url=es_url,
            index=self.get('search.index', 'movies'),
            suggest_name=self.get('search.suggest_name', 'movie-suggest'),
            field=self.get('search.field', 'suggest'),
            size=int(self.get('search.size', 5)),
            skip_duplicates=_as_bool(self.get('search.skip_duplicates', True)),
            timeout=float(self.get('search.timeout', 10)),
        )

    def get_log_level(self) -> int:
        """Уровень логирования из logging.level (INFO при неизвестном имени)"""
        name = str(self.get('logging.level', 'INFO')).upper()
        level = logging.getLevelName(name)
        return level if isinstance(level, int) else logging.INFO


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)

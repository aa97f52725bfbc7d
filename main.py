# main.py
import sys
import argparse
import logging
from logging.handlers import RotatingFileHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level=logging.INFO, log_to_file=True):
    """Настраивает логирование (консоль + файл с ротацией)"""
    handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers.append(console_handler)

    if log_to_file:
        from core.config_manager import get_app_data_dir

        logs_dir = get_app_data_dir() / "logs"
        logs_dir.mkdir(exist_ok=True)

        # Ротирующий обработчик: макс 5MB, 5 резервных копий
        file_handler = RotatingFileHandler(
            logs_dir / "relay_proxy.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='relay-proxy',
        description='Rewriting HTTP proxy for a single fixed origin',
    )
    parser.add_argument('--config', help='path to config.json')
    parser.add_argument('--host', help='listen address (default 0.0.0.0)')
    parser.add_argument('--port', help='listen port (default 8080, env PORT)')
    parser.add_argument('--origin', help='origin URL (default https://www.google.com, env ORIGIN_URL)')
    parser.add_argument('--no-rewrite', action='store_true', help='do not rewrite HTML bodies')
    parser.add_argument('--search', action='store_true', help='start the autocomplete service')
    parser.add_argument('--search-port', help='autocomplete port (default 8081)')
    parser.add_argument('--log-level', help='DEBUG, INFO, WARNING, ERROR (env LOG_LEVEL)')
    parser.add_argument('--no-log-file', action='store_true', help='log to console only')
    return parser.parse_args(argv)


def load_config(args):
    """ConfigManager с учетом флагов командной строки (флаги важнее окружения)"""
    from core.config_manager import ConfigManager

    config = ConfigManager(config_path=args.config)

    overrides = {
        'proxy.local_host': args.host,
        'proxy.local_port': args.port,
        'proxy.origin_url': args.origin,
        'search.local_port': args.search_port,
        'logging.level': args.log_level,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

    if args.no_rewrite:
        config.set('proxy.rewrite_html', False)
    if args.search:
        config.set('search.enabled', True)
    if args.no_log_file:
        config.set('logging.file', False)

    return config


def main(argv=None):
    """Основная функция приложения"""
    args = parse_args(argv)
    config = load_config(args)

    setup_logging(config.get_log_level(), bool(config.get('logging.file', True)))
    setup_exception_handler()

    try:
        settings = config.get_proxy_settings()
        search_settings = config.get_search_settings()
    except ValueError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return 2

    logger.info("🚀 Starting relay proxy")
    logger.info(f"   Origin: {settings.origin}")
    logger.info(f"   Listen: {settings.local_host}:{settings.local_port}")
    logger.info(f"   HTML rewrite: {'on' if settings.rewrite_html else 'off'}")

    from core.proxy_manager import ProxyManager

    proxy_manager = ProxyManager(settings, search_settings)
    if not proxy_manager.start():
        logger.error(
            f"❌ Failed to start proxy: {proxy_manager.last_error_type} "
            f"({proxy_manager.last_error_details})"
        )
        return 1

    try:
        proxy_manager.wait()
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")
    finally:
        proxy_manager.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())

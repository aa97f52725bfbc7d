# core/proxy/rules.py
"""Origin и правила перезаписи абсолютных URL"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ('http', 'https')


@lru_cache(maxsize=32)
def _compile(prefixes: Tuple[str, ...]):
    return re.compile("|".join(re.escape(p) for p in prefixes))


@dataclass(frozen=True)
class Origin:
    """Единственный upstream сервер (задается один раз при старте)"""

    scheme: str
    host: str

    @classmethod
    def parse(cls, url: str) -> "Origin":
        """
        Разбирает URL origin сервера

        Args:
            url: URL вида https://www.google.com (допускается порт и завершающий /)

        Returns:
            Origin

        Raises:
            ValueError: неподдерживаемая схема, нет хоста или указан путь
        """
        parts = urlsplit((url or '').strip())
        scheme = parts.scheme.lower()

        if scheme not in SUPPORTED_SCHEMES:
            raise ValueError(f"Unsupported origin scheme in {url!r} (expected http or https)")
        if not parts.netloc:
            raise ValueError(f"Origin URL {url!r} has no host")
        if parts.path not in ('', '/') or parts.query or parts.fragment:
            raise ValueError(f"Origin URL {url!r} must not contain a path, query or fragment")
        if '@' in parts.netloc:
            raise ValueError(f"Origin URL {url!r} must not contain credentials")

        return cls(scheme=scheme, host=parts.netloc.lower())

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def __str__(self):
        return self.url


@dataclass(frozen=True)
class RewriteRule:
    """Замена абсолютного префикса origin на относительный"""

    match_prefix: str
    replacement: str = ""

    def __post_init__(self):
        if not self.match_prefix:
            raise ValueError("RewriteRule.match_prefix must not be empty")
        # Замена короче префикса => подстановка всегда завершается
        if len(self.replacement) >= len(self.match_prefix):
            raise ValueError(
                f"RewriteRule replacement {self.replacement!r} must be shorter "
                f"than prefix {self.match_prefix!r}"
            )


@dataclass(frozen=True)
class RewriteRuleSet:
    """
    Упорядоченный набор правил перезаписи.

    Каждое правило заменяет все вхождения своего префикса, при пересечении
    побеждает правило, стоящее раньше. Это текстовая эвристика, а не HTML
    парсер: строка origin внутри скриптов или встроенного JSON тоже будет
    заменена.
    """

    rules: Tuple[RewriteRule, ...] = ()

    @classmethod
    def for_origin(cls, origin: Origin, protocol_relative: bool = True) -> "RewriteRuleSet":
        """
        Правила по умолчанию для origin

        Args:
            origin: upstream сервер
            protocol_relative: добавлять ли правило для //host

        Returns:
            RewriteRuleSet
        """
        # Полные схемы раньше //host, иначе от https://host останется "https:"
        rules = [
            RewriteRule(f"https://{origin.host}", ""),
            RewriteRule(f"http://{origin.host}", ""),
        ]
        if protocol_relative:
            rules.append(RewriteRule(f"//{origin.host}", ""))

        logger.debug(f"RewriteRuleSet for {origin}: {[r.match_prefix for r in rules]}")
        return cls(rules=tuple(rules))

    def apply(self, text: str) -> str:
        """
        Заменяет все вхождения префиксов в тексте

        В каждой позиции срабатывает первое подходящее правило. Проход
        повторяется, пока текст меняется: удаление одного вхождения может
        склеить соседние символы в новое вхождение.

        Args:
            text: исходный текст

        Returns:
            str: текст без вхождений префиксов
        """
        if not self.rules:
            return text

        pattern = _compile(tuple(rule.match_prefix for rule in self.rules))
        replacements = {rule.match_prefix: rule.replacement for rule in reversed(self.rules)}

        while True:
            result = pattern.sub(lambda m: replacements[m.group(0)], text)
            if result == text:
                return result
            text = result

    def rewrite_location(self, location: str) -> str:
        """Перезаписывает значение Location. Пустой результат становится "/" """
        rewritten = self.apply(location)
        return rewritten or "/"

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

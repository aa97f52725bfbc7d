# core/proxy/__init__.py
"""
Rewriting proxy core.

RequestRewriter → UpstreamTransport → ResponseRewriter → ProxyHandler.
"""

from core.proxy.errors import BodyReadError, ClientWriteError, ProxyError, RequestBuildError, TransportError
from core.proxy.rules import Origin, RewriteRule, RewriteRuleSet

__all__ = [
    'Origin',
    'RewriteRule',
    'RewriteRuleSet',
    'ProxyError',
    'RequestBuildError',
    'TransportError',
    'BodyReadError',
    'ClientWriteError',
]

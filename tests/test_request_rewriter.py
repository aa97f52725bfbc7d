# tests/test_request_rewriter.py
import pytest
from multidict import CIMultiDict, CIMultiDictProxy

from core.proxy.errors import RequestBuildError
from core.proxy.request_rewriter import InboundRequest, RequestRewriter, strip_hop_by_hop
from core.proxy.rules import Origin


def make_inbound(path='/', query='', headers=None, method='GET', body=None):
    return InboundRequest(
        method=method,
        path=path,
        query=query,
        headers=CIMultiDictProxy(CIMultiDict(headers or [])),
        body=body,
    )


@pytest.fixture
def rewriter():
    return RequestRewriter(Origin.parse("https://www.google.com"))


def test_search_request_is_sent_to_origin(rewriter):
    inbound = make_inbound(
        path='/search',
        query='q=cats',
        headers=[
            ('Host', 'localhost:8080'),
            ('Accept-Encoding', 'gzip, deflate, br'),
            ('User-Agent', 'pytest'),
        ],
    )

    outbound = rewriter.rewrite(inbound)

    assert outbound.method == 'GET'
    assert str(outbound.url) == 'https://www.google.com/search?q=cats'
    assert outbound.headers['Host'] == 'www.google.com'
    assert 'Accept-Encoding' not in outbound.headers
    assert 'Accept-Encoding' in outbound.skip_auto_headers
    assert outbound.headers['User-Agent'] == 'pytest'
    assert outbound.body is None


def test_empty_query_has_no_question_mark(rewriter):
    outbound = rewriter.rewrite(make_inbound(path='/img/logo.png'))
    assert str(outbound.url) == 'https://www.google.com/img/logo.png'


def test_encoded_path_is_forwarded_raw(rewriter):
    outbound = rewriter.rewrite(make_inbound(path='/a%20b/c%2Fd', query='q=a%26b'))
    assert str(outbound.url) == 'https://www.google.com/a%20b/c%2Fd?q=a%26b'


def test_multi_value_headers_keep_order(rewriter):
    inbound = make_inbound(headers=[
        ('Cookie', 'a=1'),
        ('X-Trace', 'one'),
        ('X-Trace', 'two'),
    ])

    outbound = rewriter.rewrite(inbound)

    assert outbound.headers.getall('X-Trace') == ['one', 'two']
    assert outbound.headers['Cookie'] == 'a=1'


def test_hop_by_hop_headers_are_dropped(rewriter):
    inbound = make_inbound(headers=[
        ('Connection', 'keep-alive, X-Secret'),
        ('Keep-Alive', 'timeout=5'),
        ('Transfer-Encoding', 'chunked'),
        ('Upgrade', 'h2c'),
        ('X-Secret', 'dropped'),
        ('X-Kept', 'kept'),
    ])

    outbound = rewriter.rewrite(inbound)

    for name in ('Connection', 'Keep-Alive', 'Transfer-Encoding', 'Upgrade', 'X-Secret'):
        assert name not in outbound.headers
    assert outbound.headers['X-Kept'] == 'kept'


def test_body_stream_is_passed_unread(rewriter):
    body = object()
    inbound = make_inbound(
        method='POST',
        path='/submit',
        headers=[('Content-Length', '7'), ('Content-Type', 'text/plain')],
        body=body,
    )

    outbound = rewriter.rewrite(inbound)

    assert outbound.method == 'POST'
    assert outbound.body is body
    assert outbound.headers['Content-Length'] == '7'


def test_content_length_dropped_without_body(rewriter):
    outbound = rewriter.rewrite(make_inbound(headers=[('Content-Length', '0')]))
    assert 'Content-Length' not in outbound.headers


def test_accept_encoding_kept_when_rewrite_disabled():
    rewriter = RequestRewriter(Origin.parse("https://www.google.com"), strip_accept_encoding=False)

    outbound = rewriter.rewrite(make_inbound(headers=[('Accept-Encoding', 'gzip')]))

    assert outbound.headers['Accept-Encoding'] == 'gzip'
    assert outbound.skip_auto_headers == ()


@pytest.mark.parametrize("path, query", [
    ('search', ''),
    ('', ''),
    ('/bad path', ''),
    ('/ok', 'q=a b'),
    ('/bad\r\nHeader: x', ''),
])
def test_malformed_target_raises(rewriter, path, query):
    with pytest.raises(RequestBuildError) as exc_info:
        rewriter.rewrite(make_inbound(path=path, query=query))
    assert exc_info.value.status == 500


def test_strip_hop_by_hop_returns_copy():
    original = CIMultiDict([('Connection', 'close'), ('Accept', '*/*')])

    result = strip_hop_by_hop(original)
    result['Accept'] = 'text/html'

    assert original['Accept'] == '*/*'
    assert 'Connection' in original

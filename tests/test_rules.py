# tests/test_rules.py
import pytest

from core.proxy.rules import Origin, RewriteRule, RewriteRuleSet


@pytest.fixture
def google():
    return Origin.parse("https://www.google.com")


@pytest.fixture
def rules(google):
    return RewriteRuleSet.for_origin(google)


def test_origin_parse():
    origin = Origin.parse("https://www.google.com/")
    assert origin == Origin(scheme="https", host="www.google.com")
    assert origin.url == "https://www.google.com"


def test_origin_parse_keeps_port():
    origin = Origin.parse("http://127.0.0.1:9000")
    assert origin.scheme == "http"
    assert origin.host == "127.0.0.1:9000"


@pytest.mark.parametrize("url", [
    "ftp://example.com",
    "www.google.com",
    "https://",
    "https://www.google.com/search",
    "https://www.google.com/?q=1",
    "https://user:pw@www.google.com",
    "",
])
def test_origin_parse_rejects(url):
    with pytest.raises(ValueError):
        Origin.parse(url)


def test_default_rules_order(rules):
    prefixes = [rule.match_prefix for rule in rules]
    assert prefixes == [
        "https://www.google.com",
        "http://www.google.com",
        "//www.google.com",
    ]


def test_rules_without_protocol_relative(google):
    rules = RewriteRuleSet.for_origin(google, protocol_relative=False)
    assert len(rules) == 2


def test_rule_replacement_must_be_shorter():
    with pytest.raises(ValueError):
        RewriteRule("//a", "//ab")
    with pytest.raises(ValueError):
        RewriteRule("", "")


def test_apply_rewrites_links(rules):
    html = '<a href="https://www.google.com/search?q=dogs">dogs</a>'
    assert rules.apply(html) == '<a href="/search?q=dogs">dogs</a>'


def test_apply_rewrites_all_variants(rules):
    html = (
        '<a href="https://www.google.com/a">'
        '<a href="http://www.google.com/b">'
        '<script src="//www.google.com/c.js">'
    )
    assert rules.apply(html) == '<a href="/a"><a href="/b"><script src="/c.js">'


def test_apply_leaves_other_hosts(rules):
    html = '<a href="https://example.com/x">x</a>'
    assert rules.apply(html) == html


def test_apply_removes_glued_occurrences(rules):
    text = "https://www.https://www.google.comgoogle.com/x"
    result = rules.apply(text)
    assert result == "/x"
    for rule in rules:
        assert rule.match_prefix not in result


def test_apply_is_idempotent(rules):
    text = 'x https://www.google.com/a "http://www.google.com" //www.google.com/b'
    once = rules.apply(text)
    assert rules.apply(once) == once


def test_rewrite_location(rules):
    assert rules.rewrite_location("https://www.google.com/search?q=x") == "/search?q=x"
    assert rules.rewrite_location("https://www.google.com") == "/"
    assert rules.rewrite_location("https://www.google.com/") == "/"
    assert rules.rewrite_location("/already/relative") == "/already/relative"
    assert rules.rewrite_location("https://accounts.example.com/login") == "https://accounts.example.com/login"

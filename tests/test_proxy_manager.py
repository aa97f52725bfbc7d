# tests/test_proxy_manager.py
import socket
from unittest.mock import MagicMock

import pytest
import requests

from core.config_manager import ProxySettings, SearchSettings
from core.proxy.rules import Origin, RewriteRuleSet
from core.proxy_manager import ProxyManager
from utils import port_utils


def make_settings(port, origin_url="http://127.0.0.1:1"):
    origin = Origin.parse(origin_url)
    return ProxySettings(
        origin=origin,
        rule_set=RewriteRuleSet.for_origin(origin),
        local_host='127.0.0.1',
        local_port=port,
    )


@pytest.fixture
def origin_probe(monkeypatch):
    probe = MagicMock(return_value=MagicMock(status_code=200))
    monkeypatch.setattr(requests, 'head', probe)
    return probe


def test_start_and_stop(closed_port, origin_probe):
    manager = ProxyManager(make_settings(closed_port))

    assert manager.start() is True
    try:
        assert manager.is_running
        assert port_utils.is_port_in_use(closed_port, '127.0.0.1')
        status = manager.get_status()
        assert status['running'] is True
        assert status['proxy_stats']['requests'] == 0
    finally:
        manager.stop()

    assert not manager.is_running
    assert not manager.thread.is_alive()
    assert not port_utils.is_port_in_use(closed_port, '127.0.0.1')
    origin_probe.assert_called_once()
    assert origin_probe.call_args.kwargs['allow_redirects'] is False


def test_immediate_stop_frees_port(closed_port, origin_probe):
    for _ in range(3):
        manager = ProxyManager(make_settings(closed_port))
        assert manager.start() is True

        manager.stop()

        assert manager.loop.is_closed()
        assert not manager.thread.is_alive()
        assert manager.runners == []
        assert not port_utils.is_port_in_use(closed_port, '127.0.0.1')


def test_start_twice_is_refused(closed_port, origin_probe):
    manager = ProxyManager(make_settings(closed_port))
    assert manager.start()
    try:
        assert manager.start() is False
    finally:
        manager.stop()


def test_busy_port_is_reported(monkeypatch):
    lookup = MagicMock(return_value={'name': 'nginx', 'pid': 4242, 'username': 'www'})
    monkeypatch.setattr(port_utils, 'get_process_using_port', lookup)

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        s.listen()
        port = s.getsockname()[1]

        manager = ProxyManager(make_settings(port))

        assert manager.start() is False
        assert manager.last_error_type == 'port'
        assert str(port) in manager.last_error_details
        assert 'nginx' in manager.last_error_details
        lookup.assert_called_once_with(port)
        assert manager.thread is None


def test_unreachable_origin_does_not_stop_proxy(closed_port, monkeypatch):
    monkeypatch.setattr(requests, 'head', MagicMock(side_effect=requests.ConnectionError('refused')))
    manager = ProxyManager(make_settings(closed_port))

    assert manager.start() is True
    try:
        assert manager.last_error_type == 'origin'
        assert manager.get_status()['last_error']['type'] == 'origin'
    finally:
        manager.stop()


def test_search_port_is_checked(closed_port):
    search = SearchSettings(enabled=True, local_host='127.0.0.1', local_port=closed_port + 1)
    manager = ProxyManager(make_settings(closed_port), search)

    assert manager._ports() == [('127.0.0.1', closed_port), ('127.0.0.1', closed_port + 1)]


def test_stop_when_not_running_is_noop():
    manager = ProxyManager(make_settings(8080))
    manager.stop()
    assert manager.get_proxy_stats() is None

import json
from unittest.mock import Mock

import pytest
import requests

import looptunnel.cli as cli


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 0
    assert "serve" in capsys.readouterr().out


def test_status_prints_json(monkeypatch, capsys):
    payload = {"running": True, "active_sessions": 2}
    fake_get = Mock(return_value=Mock(status_code=200, json=lambda: payload))
    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["status", "--port", "9100"]) == 0

    fake_get.assert_called_once_with("http://127.0.0.1:9100/api/status", timeout=5)
    assert json.loads(capsys.readouterr().out) == payload


def test_status_unreachable(monkeypatch, capsys):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(cli.requests, "get", boom)

    assert cli.main(["status"]) == 1
    assert "refused" in capsys.readouterr().err


def test_serve_reports_bind_failure(tunnel_server):
    host, port = tunnel_server.address[:2]
    assert cli.main(["serve", "--listen", f"tcp:{host}:{port}"]) == 1


def test_serve_rejects_bad_endpoint():
    with pytest.raises(SystemExit):
        cli.main(["serve", "--listen", "carrier-pigeon:1"])

from __future__ import annotations

from fieldops import serve

SERVE_ENV = (
    "HOST",
    "PORT",
    "RELOAD",
    "LOG_LEVEL",
    "FORWARDED_ALLOW_IPS",
    "SSL_CERTFILE",
    "SSL_KEYFILE",
    "SSL_KEYFILE_PASSWORD",
)


def _clear_env(monkeypatch):
    for name in SERVE_ENV:
        monkeypatch.delenv(name, raising=False)


def test_run_options_defaults(monkeypatch):
    _clear_env(monkeypatch)

    assert serve.run_options() == {
        "host": "0.0.0.0",
        "port": 8000,
        "reload": False,
        "log_level": "info",
        "proxy_headers": True,
        "forwarded_allow_ips": "127.0.0.1",
    }


def test_run_options_from_env(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("PORT", "9001")
    monkeypatch.setenv("RELOAD", "Yes")
    monkeypatch.setenv("FORWARDED_ALLOW_IPS", "10.0.0.5")
    monkeypatch.setenv("SSL_CERTFILE", "/etc/fieldops/cert.pem")
    monkeypatch.setenv("SSL_KEYFILE", "/etc/fieldops/key.pem")

    options = serve.run_options()

    assert options["port"] == 9001
    assert options["reload"] is True
    assert options["forwarded_allow_ips"] == "10.0.0.5"
    assert options["ssl_certfile"] == "/etc/fieldops/cert.pem"
    assert options["ssl_keyfile"] == "/etc/fieldops/key.pem"
    assert "ssl_keyfile_password" not in options


def test_main_runs_the_api_app(monkeypatch):
    _clear_env(monkeypatch)
    calls = []
    monkeypatch.setattr(serve.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    serve.main()

    assert calls == [("fieldops.main:app", serve.run_options())]

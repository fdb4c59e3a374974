"""CLI wiring tests."""

from typer.testing import CliRunner

from podsettle.api import main as api_main
from podsettle.cli import serve as serve_cmd
from podsettle.cli.app import app
from podsettle.config import Settings

runner = CliRunner()


def test_serve_passes_config_dir_and_profile(tmp_path, monkeypatch):
    (tmp_path / "default.toml").write_text('[storage]\ndb_path = "data/bets.duckdb"\n')
    calls = []
    monkeypatch.setattr(serve_cmd, "run_api", lambda **kwargs: calls.append(kwargs))

    result = runner.invoke(app, ["--config-dir", str(tmp_path), "serve", "--port", "9001"])
    assert result.exit_code == 0, result.output
    assert calls == [{"host": "127.0.0.1", "port": 9001, "profile": None, "config_dir": tmp_path}]


def test_app_factory_loads_settings_from_config_dir(tmp_path, monkeypatch):
    seen = []

    def fake_get_settings(profile=None, config_dir=None):
        seen.append((profile, config_dir))
        return Settings()

    monkeypatch.setattr(api_main, "get_settings", fake_get_settings)
    monkeypatch.setattr(api_main, "_config_profile", "dev")
    monkeypatch.setattr(api_main, "_config_dir", tmp_path)
    api_main.create_app(with_service=False)
    assert seen == [("dev", tmp_path)]

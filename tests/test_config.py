"""
Tests for configuration and the CLI.
"""

import json

from click.testing import CliRunner

from peerbeam import config as config_module
from peerbeam.cli import main
from peerbeam.config import (
    DEFAULT_SERVER_URL,
    Config,
    ServerConfig,
    get_config,
    reset_config,
    set_config,
)
from peerbeam.mesh.rtc import DEFAULT_ICE_SERVERS


class TestConfig:
    """Tests for Config persistence."""

    def test_defaults(self, tmp_path):
        """Test a missing file yields defaults."""
        config = Config.load(tmp_path)
        assert config.display_name is None
        assert config.server_url == DEFAULT_SERVER_URL
        assert config.ice_servers == DEFAULT_ICE_SERVERS
        assert config.connect_timeout == 5.0
        assert config.room_poll_interval == 3.0
        assert config.server.port == 9876
        assert not Config.exists(tmp_path)

    def test_save_and_load(self, tmp_path):
        """Test values survive a save/load cycle."""
        config = Config(data_dir=tmp_path, display_name="Ann", server_url="ws://10.0.0.2:9876")
        config.server = ServerConfig(host="127.0.0.1", port=9000)
        config.save()

        loaded = Config.load(tmp_path)
        assert Config.exists(tmp_path)
        assert loaded.display_name == "Ann"
        assert loaded.server_url == "ws://10.0.0.2:9876"
        assert loaded.server.host == "127.0.0.1"
        assert loaded.server.port == 9000

    def test_unknown_server_keys_ignored(self, tmp_path):
        """Test newer config files still load."""
        (tmp_path / "config.json").write_text(json.dumps({"server": {"port": 1234, "tls": True}}))
        assert Config.load(tmp_path).server.port == 1234

    def test_unreadable_file(self, tmp_path):
        """Test a corrupt file falls back to defaults."""
        (tmp_path / "config.json").write_text("{broken")
        assert Config.load(tmp_path).server_url == DEFAULT_SERVER_URL

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test environment variables beat the file."""
        Config(data_dir=tmp_path, display_name="Ann").save()
        monkeypatch.setenv("PEERBEAM_NAME", "Env Ann")
        monkeypatch.setenv("PEERBEAM_SERVER_URL", "ws://relay:1")

        config = Config.load(tmp_path)
        assert config.display_name == "Env Ann"
        assert config.server_url == "ws://relay:1"

    def test_global_instance(self, tmp_path):
        """Test set/get/reset of the global config."""
        config = Config(data_dir=tmp_path, display_name="Ann")
        set_config(config)
        assert get_config() is config
        reset_config()
        assert config_module._config is None


class TestCli:
    """Tests for CLI commands that need no network."""

    def test_name_set_and_show(self, tmp_path, monkeypatch):
        """Test the name command stores and shows the display name."""
        monkeypatch.delenv("PEERBEAM_NAME", raising=False)
        set_config(Config(data_dir=tmp_path))
        runner = CliRunner()
        try:
            result = runner.invoke(main, ["name", "Ann"])
            assert result.exit_code == 0
            assert Config.load(tmp_path).display_name == "Ann"

            result = runner.invoke(main, ["name"])
            assert result.exit_code == 0
            assert "Ann" in result.output
        finally:
            reset_config()

    def test_rooms_unreachable(self, tmp_path):
        """Test the rooms command reports an unreachable server."""
        set_config(Config(data_dir=tmp_path, connect_timeout=2.0))
        runner = CliRunner()
        try:
            result = runner.invoke(main, ["rooms", "--server", "ws://127.0.0.1:1"])
            assert result.exit_code == 1
        finally:
            reset_config()

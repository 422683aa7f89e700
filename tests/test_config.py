"""
Tests for layered client configuration.
"""

import pytest

from authpipe.config import ClientConfiguration, ENV_MAPPINGS, parse_config_value
from authpipe.shared.exceptions import ConfigurationError, ErrorCode
from authpipe.shared.logging_config import LogLevel, LogFormat


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ENV_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'client.conf'
    path.write_text(
        "[server]\n"
        "url = https://api.example.com/\n"
        "timeout = 15\n"
        "refresh_path = session/refresh\n"
        "\n"
        "[storage]\n"
        "use_keyring = false\n"
        "storage_dir = /var/lib/authpipe\n"
        "\n"
        "[logging]\n"
        "level = debug\n"
        "format = json\n"
    )
    return path


class TestClientConfiguration:
    """Test configuration precedence and validation."""

    def test_defaults_without_file(self, tmp_path):
        config = ClientConfiguration(str(tmp_path / 'absent.conf'))

        assert config.get_server_url() == 'http://localhost:8080'
        assert config.get_server_timeout() == 10.0
        assert config.get_refresh_path() == '/auth/refresh'
        assert config.get_service_name() == 'authpipe'
        assert config.get_storage_dir() is None
        assert config.use_keyring() is True
        assert config.get_log_level() == LogLevel.INFO
        assert config.get_log_format() == LogFormat.STANDARD

    def test_values_from_file(self, config_file):
        config = ClientConfiguration(str(config_file))

        assert config.get_server_url() == 'https://api.example.com'
        assert config.get_server_timeout() == 15.0
        assert config.get_refresh_path() == '/session/refresh'
        assert config.use_keyring() is False
        assert config.get_storage_dir() == '/var/lib/authpipe'
        assert config.get_log_level() == LogLevel.DEBUG
        assert config.get_log_format() == LogFormat.JSON

    def test_environment_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv('AUTHPIPE_SERVER_URL', 'http://env.example.com')
        monkeypatch.setenv('AUTHPIPE_TIMEOUT', '2.5')
        monkeypatch.setenv('AUTHPIPE_USE_KEYRING', 'true')

        config = ClientConfiguration(str(config_file))

        assert config.get_server_url() == 'http://env.example.com'
        assert config.get_server_timeout() == 2.5
        assert config.use_keyring() is True

    def test_override_beats_environment(self, config_file, monkeypatch):
        monkeypatch.setenv('AUTHPIPE_SERVER_URL', 'http://env.example.com')
        config = ClientConfiguration(str(config_file))

        config.set_override('server.url', 'http://cli.example.com')

        assert config.get_server_url() == 'http://cli.example.com'
        assert config.get_config('server.url') == 'http://cli.example.com'

    def test_dot_notation_lookup(self, config_file):
        config = ClientConfiguration(str(config_file))

        assert config.get_config('server.timeout') == 15.0
        assert config.get_config('server.missing', 'fallback') == 'fallback'
        assert config.get_config('nosection.key') is None

    @pytest.mark.parametrize("env_var,value", [
        ('AUTHPIPE_TIMEOUT', 'soon'),
        ('AUTHPIPE_TIMEOUT', '0'),
        ('AUTHPIPE_SERVER_URL', 'ftp://example.com'),
        ('AUTHPIPE_USE_KEYRING', 'maybe'),
        ('AUTHPIPE_LOG_LEVEL', 'LOUD'),
        ('AUTHPIPE_LOG_FORMAT', 'xml'),
    ])
    def test_invalid_values_raise(self, tmp_path, monkeypatch, env_var, value):
        monkeypatch.setenv(env_var, value)

        with pytest.raises(ConfigurationError) as exc_info:
            ClientConfiguration(str(tmp_path / 'absent.conf'))

        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_VALUE
        assert 'config_key' in exc_info.value.context

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / 'broken.conf'
        path.write_text("url = no section header\n")

        with pytest.raises(ConfigurationError) as exc_info:
            ClientConfiguration(str(path))

        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_FORMAT

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / 'nested' / 'client.conf'
        config = ClientConfiguration(str(path))
        config.set_config('server.url', 'https://saved.example.com')
        config.set_config('storage.use_keyring', False)

        config.save_configuration()
        reloaded = ClientConfiguration(str(path))

        assert reloaded.get_server_url() == 'https://saved.example.com'
        assert reloaded.use_keyring() is False
        assert reloaded.get_storage_dir() is None

    def test_invalid_value_is_not_saved(self, tmp_path):
        path = tmp_path / 'client.conf'
        config = ClientConfiguration(str(path))
        config.set_config('server.timeout', -1)

        with pytest.raises(ConfigurationError) as exc_info:
            config.save_configuration()

        assert exc_info.value.context['config_key'] == 'server.timeout'
        assert not path.exists()

    def test_set_config_rejects_unknown_key(self, tmp_path):
        config = ClientConfiguration(str(tmp_path / 'absent.conf'))

        with pytest.raises(ConfigurationError) as exc_info:
            config.set_config('server.colour', 'blue')

        assert exc_info.value.context['config_key'] == 'server.colour'

    @pytest.mark.parametrize("raw,expected", [
        ('false', False),
        ('4', 4),
        ('2.5', 2.5),
        ('https://example.com', 'https://example.com'),
        ('/auth/refresh', '/auth/refresh'),
    ])
    def test_parse_config_value(self, raw, expected):
        assert parse_config_value(raw) == expected

    def test_set_config_requires_section(self, tmp_path):
        config = ClientConfiguration(str(tmp_path / 'absent.conf'))

        with pytest.raises(ConfigurationError):
            config.set_config('url', 'x')

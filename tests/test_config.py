"""Tests for configuration loading and validation."""

import base64
import json
import tempfile

import pytest
import yaml

from agent_proxy.config import decode_service_account_key, load_config, validate_config
from agent_proxy.types import ConfigError

SA_KEY = base64.b64encode(json.dumps({"type": "service_account", "project_id": "p"}).encode()).decode()


class TestLoadConfig:
    def test_load_defaults(self):
        config = load_config(config_dict={}, env={})
        assert config.agent_engine.endpoint == ""
        assert config.agent_engine.fallback_text == "no response"
        assert config.agent_engine.stream_timeout_seconds == 120.0
        assert config.session.backend == "redis"
        assert config.session.key_prefix == "session:"
        assert config.credentials.token_cache is False
        assert config.server.port == 3001
        assert config.log_level == "INFO"

    def test_load_from_dict(self):
        config = load_config(config_dict={
            "agent_engine": {"endpoint": "https://x.test/engines/1/", "read_timeout": 30},
            "session": {"backend": "memory", "ttl_seconds": 90},
            "logging": {"level": "debug"},
        }, env={})
        assert config.agent_engine.endpoint == "https://x.test/engines/1"
        assert config.agent_engine.read_timeout == 30.0
        assert config.session.backend == "memory"
        assert config.session.ttl_seconds == 90
        assert config.log_level == "DEBUG"

    def test_load_from_yaml_file(self):
        raw = {
            "agent_engine": {"endpoint": "https://yaml.test/engine"},
            "session": {"ttl_seconds": 120},
        }
        with tempfile.NamedTemporaryFile(suffix=".yaml", mode="w", delete=False) as f:
            yaml.dump(raw, f)
            f.flush()
            config = load_config(config_path=f.name, env={})
        assert config.agent_engine.endpoint == "https://yaml.test/engine"
        assert config.session.ttl_seconds == 120

    def test_load_from_json_file(self):
        with tempfile.NamedTemporaryFile(suffix=".json", mode="w", delete=False) as f:
            json.dump({"server": {"port": 8080}}, f)
            f.flush()
            config = load_config(config_path=f.name, env={})
        assert config.server.port == 8080

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(config_path="/nonexistent/agent-proxy.yaml", env={})


class TestEnvironment:
    def test_env_overrides(self):
        config = load_config(config_dict={"session": {"ttl_seconds": 5}}, env={
            "AGENT_ENGINE_ENDPOINT": "https://env.test/engine",
            "UPSTASH_REDIS_URL": "rediss://default:pw@upstash.test:6379",
            "SESSION_TTL_MINUTES": "30",
            "GOOGLE_SERVICE_ACCOUNT_KEY_BASE64": SA_KEY,
        })
        assert config.agent_engine.endpoint == "https://env.test/engine"
        assert config.session.redis_url == "rediss://default:pw@upstash.test:6379"
        assert config.session.ttl_seconds == 1800
        assert config.credentials.service_account_key_base64 == SA_KEY

    def test_redis_url_fallback(self):
        config = load_config(config_dict={}, env={"REDIS_URL": "redis://local:6379"})
        assert config.session.redis_url == "redis://local:6379"

    def test_upstash_wins_over_redis_url(self):
        config = load_config(config_dict={}, env={
            "REDIS_URL": "redis://local:6379", "UPSTASH_REDIS_URL": "rediss://up:6379",
        })
        assert config.session.redis_url == "rediss://up:6379"

    def test_bad_ttl_minutes(self):
        with pytest.raises(ConfigError):
            load_config(config_dict={}, env={"SESSION_TTL_MINUTES": "soon"})

    def test_key_file_env(self):
        config = load_config(config_dict={}, env={"GOOGLE_APPLICATION_CREDENTIALS": "/k.json"})
        assert config.credentials.service_account_file == "/k.json"


class TestDecodeServiceAccountKey:
    def test_roundtrip(self):
        assert decode_service_account_key(SA_KEY)["project_id"] == "p"

    def test_not_base64(self):
        with pytest.raises(ConfigError):
            decode_service_account_key("!!not-base64!!")

    def test_not_json(self):
        with pytest.raises(ConfigError):
            decode_service_account_key(base64.b64encode(b"plain text").decode())

    def test_not_object(self):
        with pytest.raises(ConfigError):
            decode_service_account_key(base64.b64encode(b"[1, 2]").decode())


class TestValidateConfig:
    def _valid(self, **overrides):
        raw = {
            "agent_engine": {"endpoint": "https://x.test/engine"},
            "session": {"backend": "redis", "redis_url": "redis://localhost"},
            "credentials": {"service_account_key_base64": SA_KEY},
        }
        raw.update(overrides)
        return load_config(config_dict=raw, env={})

    def test_valid(self):
        assert validate_config(self._valid()) == []

    def test_missing_endpoint(self):
        errors = validate_config(self._valid(agent_engine={}))
        assert any("endpoint" in e for e in errors)

    def test_non_http_endpoint(self):
        errors = validate_config(self._valid(agent_engine={"endpoint": "ftp://x"}))
        assert any("http(s)" in e for e in errors)

    def test_nonpositive_ttl(self):
        errors = validate_config(self._valid(session={"backend": "memory", "ttl_seconds": 0}))
        assert any("ttl_seconds" in e for e in errors)

    def test_unknown_backend(self):
        errors = validate_config(self._valid(session={"backend": "memcached"}))
        assert any("session.backend" in e for e in errors)

    def test_redis_requires_url(self):
        errors = validate_config(self._valid(session={"backend": "redis"}))
        assert any("redis_url" in e for e in errors)

    def test_no_credentials(self):
        errors = validate_config(self._valid(credentials={}))
        assert any("No credentials" in e for e in errors)

    def test_two_credential_sources(self):
        errors = validate_config(self._valid(credentials={
            "service_account_key_base64": SA_KEY, "service_account_file": "/k.json",
        }))
        assert any("only one" in e for e in errors)

    def test_bad_base64_key(self):
        errors = validate_config(self._valid(credentials={"service_account_key_base64": "nope"}))
        assert any("base64" in e for e in errors)

    def test_static_token_is_enough(self):
        assert validate_config(self._valid(credentials={"static_token": "dev"})) == []

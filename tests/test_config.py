"""Tests for configuration layering: defaults, TOML file, environment."""

from pathlib import Path

import pytest

from novadb_harness.config import HarnessConfig, apply_env, load_config


class TestLoadConfig:
    def test_defaults_without_file_or_env(self):
        config = load_config(environ={})

        assert config.binary == "novadbplus"
        assert config.kvstore_count == 10
        assert config.ports.master == 41001
        assert config.workload.keyprefix1 == "aa"
        assert config.barrier.poll_interval == 1.0
        assert config.startup is True

    def test_toml_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "harness.toml"
        path.write_text(
            'binary = "/opt/novadbplus"\n'
            "kvstore_count = 4\n"
            "[ports]\n"
            "master = 51001\n"
            "[barrier]\n"
            "catchup_timeout = 5\n"
        )

        config = load_config(path, environ={})

        assert config.binary == "/opt/novadbplus"
        assert config.kvstore_count == 4
        assert config.ports.master == 51001
        # untouched siblings keep their defaults
        assert config.ports.slave == 41002
        assert config.barrier.catchup_timeout == 5.0
        assert isinstance(config.barrier.catchup_timeout, float)

    def test_environment_wins_over_file(self, tmp_path):
        path = tmp_path / "harness.toml"
        path.write_text("kvstore_count = 4\n")

        config = load_config(path, environ={
            "NOVADB_HARNESS_KVSTORECOUNT": "6",
            "NOVADB_HARNESS_NUM1": "50",
            "NOVADB_HARNESS_WORK_DIR": str(tmp_path),
        })

        assert config.kvstore_count == 6
        assert config.workload.num1 == 50
        assert config.work_dir == tmp_path

    def test_unknown_key_is_rejected(self, tmp_path):
        path = tmp_path / "harness.toml"
        path.write_text("kvstorecount = 4\n")

        with pytest.raises(ValueError, match="kvstorecount"):
            load_config(path, environ={})

    def test_section_must_be_a_table(self):
        with pytest.raises(ValueError, match="ports"):
            HarnessConfig.from_dict({"ports": 41001})

    def test_boolean_coercion_from_strings(self):
        config = HarnessConfig.from_dict({"keep_data": "yes", "startup": "false"})

        assert config.keep_data is True
        assert config.startup is False


class TestOverrides:
    def test_none_values_are_ignored(self):
        config = HarnessConfig().with_overrides(binary=None, password="secret")

        assert config.binary == "novadbplus"
        assert config.password == "secret"

    def test_apply_env_without_matches_returns_same_object(self):
        config = HarnessConfig(work_dir=Path("/tmp"))
        assert apply_env(config, {"UNRELATED": "1"}) is config

"""
Tests for ConfigLoader precedence: environment > knowledge_index.json > defaults.
"""

import json

import pytest

from knowledge_index.services.config_loader import CONFIG_FILENAME, ConfigLoader


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var in ConfigLoader.CONFIG_KEY_TO_ENV.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("KNOWLEDGE_PROJECT_ROOT", raising=False)


def write_config(root, data):
    (root / CONFIG_FILENAME).write_text(json.dumps(data), encoding="utf-8")


class TestConfigLoader:

    def test_defaults_without_config_file(self, tmp_path):
        loader = ConfigLoader()
        assert loader.load(tmp_path) is False

        config = loader.get_index_config()

        assert config["embed_batch_size"] == 32
        assert config["use_lightweight_embeddings"] is False
        assert config["index_path"] == str(tmp_path / ".knowledge_index")

    def test_file_values_override_defaults(self, tmp_path):
        write_config(tmp_path, {"results_per_corpus": 7, "index_path": "/data/idx"})
        loader = ConfigLoader()

        assert loader.load(tmp_path) is True
        config = loader.get_index_config()

        assert config["results_per_corpus"] == 7
        assert config["index_path"] == "/data/idx"
        assert loader.config_path == tmp_path / CONFIG_FILENAME

    def test_environment_wins(self, tmp_path, monkeypatch):
        write_config(tmp_path, {"results_per_corpus": 7})
        monkeypatch.setenv("KNOWLEDGE_RESULTS_PER_CORPUS", "3")
        monkeypatch.setenv("KNOWLEDGE_USE_LIGHTWEIGHT", "yes")
        loader = ConfigLoader()
        loader.load(tmp_path)

        config = loader.get_index_config()

        assert config["results_per_corpus"] == 3
        assert config["use_lightweight_embeddings"] is True

    def test_unparseable_int_keeps_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KNOWLEDGE_EMBED_BATCH_SIZE", "many")
        loader = ConfigLoader()
        loader.load(tmp_path)
        assert loader.get_index_config()["embed_batch_size"] == 32

    def test_invalid_json_is_ignored(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("{not json", encoding="utf-8")
        loader = ConfigLoader()

        assert loader.load(tmp_path) is False
        assert loader.get_index_config()["max_related_connections"] == 5

    def test_load_is_cached(self, tmp_path):
        loader = ConfigLoader()
        loader.load(tmp_path)
        write_config(tmp_path, {"results_per_corpus": 9})

        assert loader.load(tmp_path) is False
        assert loader.get_index_config()["results_per_corpus"] == 10

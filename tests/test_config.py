"""
Unit tests for hybrid_memory.config

Resolution order (env > YAML > defaults), config-file discovery and
embedding provider selection.
"""

from __future__ import annotations

import os

import pytest

_ENV_KEYS = [
    "SQLITE_DB_PATH", "CHROMA_PERSIST_DIRECTORY", "EMBEDDING_PROVIDER",
    "EMBEDDING_MODEL", "EMBEDDING_DIMENSIONS", "EMBEDDING_MAX_RETRIES",
    "OPENAI_API_KEY", "OPENAI_BASE_URL", "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_DEPLOYMENT_NAME",
    "AZURE_OPENAI_API_VERSION", "OLLAMA_BASE_URL", "DEFAULT_PROJECT_PATH",
    "TRAVERSAL_MAX_EDGES", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear config env vars and isolate CWD / HOME from real config files."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return monkeypatch


class TestDefaults:

    def test_defaults(self, clean_env, tmp_path):
        from hybrid_memory.config import Config
        cfg = Config.load(None)
        assert cfg.SQLITE_DB_PATH == os.path.join(str(tmp_path), "memory.db")
        assert cfg.VECTOR_PERSIST_DIR == os.path.join(str(tmp_path), "chroma_db")
        assert cfg.EMBEDDING_PROVIDER == "auto"
        assert cfg.EMBEDDING_MODEL == "text-embedding-ada-002"
        assert cfg.EMBEDDING_DIMENSIONS == 1536
        assert cfg.EMBEDDING_MAX_RETRIES == 2
        assert cfg.AZURE_OPENAI_API_VERSION == "2024-02-15-preview"
        assert cfg.OLLAMA_BASE_URL == "http://localhost:11434"
        assert cfg.TRAVERSAL_MAX_EDGES == 10000
        assert cfg.LOG_LEVEL == "WARNING"
        assert cfg.resolve_embedding_provider() == "local"


class TestYaml:

    YAML = """\
sqlite_db_path: data/graph.db
embedding_provider: ollama
embedding_dimensions: 768
traversal_max_edges: 50
log_level: debug
openai:
  api_key: sk-from-yaml
azure:
  endpoint: https://example.openai.azure.com
  deployment_name: embed
"""

    def test_explicit_yaml_path(self, clean_env, tmp_path):
        from hybrid_memory.config import Config
        path = tmp_path / "custom.yaml"
        path.write_text(self.YAML)

        cfg = Config.load(str(path))
        assert cfg.SQLITE_DB_PATH == os.path.join(str(tmp_path), "data", "graph.db")
        assert cfg.EMBEDDING_PROVIDER == "ollama"
        assert cfg.EMBEDDING_DIMENSIONS == 768
        assert cfg.TRAVERSAL_MAX_EDGES == 50
        assert cfg.LOG_LEVEL == "DEBUG"
        assert cfg.OPENAI_API_KEY == "sk-from-yaml"
        assert cfg.AZURE_OPENAI_ENDPOINT == "https://example.openai.azure.com"
        assert cfg.AZURE_OPENAI_DEPLOYMENT_NAME == "embed"

    def test_yaml_discovered_in_cwd(self, clean_env, tmp_path):
        from hybrid_memory.config import Config
        (tmp_path / ".hybrid_memory.yaml").write_text("embedding_model: nomic-embed-text\n")
        assert Config.load(None).EMBEDDING_MODEL == "nomic-embed-text"

    def test_missing_explicit_path_uses_defaults(self, clean_env, tmp_path):
        from hybrid_memory.config import Config
        cfg = Config.load(str(tmp_path / "absent.yaml"))
        assert cfg.EMBEDDING_PROVIDER == "auto"

    def test_invalid_yaml_ignored(self, clean_env, tmp_path):
        from hybrid_memory.config import Config
        path = tmp_path / "broken.yaml"
        path.write_text("embedding_model: [unclosed\n")
        assert Config.load(str(path)).EMBEDDING_MODEL == "text-embedding-ada-002"

    def test_env_overrides_yaml(self, clean_env, tmp_path):
        from hybrid_memory.config import Config
        path = tmp_path / "custom.yaml"
        path.write_text(self.YAML)
        clean_env.setenv("EMBEDDING_DIMENSIONS", "384")
        clean_env.setenv("OPENAI_API_KEY", "sk-env")

        cfg = Config.load(str(path))
        assert cfg.EMBEDDING_DIMENSIONS == 384
        assert cfg.OPENAI_API_KEY == "sk-env"


class TestProviderSelection:

    def test_unknown_provider_becomes_auto(self, clean_env):
        from hybrid_memory.config import Config
        clean_env.setenv("EMBEDDING_PROVIDER", "bogus")
        assert Config().EMBEDDING_PROVIDER == "auto"

    def test_auto_prefers_azure(self, clean_env):
        from hybrid_memory.config import Config
        clean_env.setenv("OPENAI_API_KEY", "sk")
        clean_env.setenv("AZURE_OPENAI_API_KEY", "az")
        clean_env.setenv("AZURE_OPENAI_ENDPOINT", "https://x.openai.azure.com")
        assert Config().resolve_embedding_provider() == "azure"

    def test_auto_uses_openai_key(self, clean_env):
        from hybrid_memory.config import Config
        clean_env.setenv("OPENAI_API_KEY", "sk")
        assert Config().resolve_embedding_provider() == "openai"

    def test_azure_needs_key_and_endpoint(self, clean_env):
        from hybrid_memory.config import Config
        clean_env.setenv("AZURE_OPENAI_API_KEY", "az")
        cfg = Config()
        assert cfg.azure_configured is False
        assert cfg.resolve_embedding_provider() == "local"

    def test_forced_provider(self, clean_env):
        from hybrid_memory.config import Config
        clean_env.setenv("EMBEDDING_PROVIDER", "Local")
        clean_env.setenv("OPENAI_API_KEY", "sk")
        assert Config().resolve_embedding_provider() == "local"

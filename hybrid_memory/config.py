"""
Configuration: loads settings from .hybrid_memory.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "sqlite_db_path": "./memory.db",
    "vector_persist_dir": "./chroma_db",
    "embedding_provider": "auto",
    "embedding_model": "text-embedding-ada-002",
    "embedding_dimensions": 1536,
    "embedding_max_retries": 2,
    "openai_api_key": "",
    "openai_base_url": "",
    "azure_api_version": "2024-02-15-preview",
    "ollama_base_url": "http://localhost:11434",
    "traversal_max_edges": 10_000,
    "log_level": "WARNING",
}

EMBEDDING_PROVIDERS = ("auto", "local", "openai", "azure", "ollama")

# Config file search locations
_CONFIG_FILENAMES = [".hybrid_memory.yaml", ".hybrid_memory.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .hybrid_memory.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _section(name: str) -> dict:
            section = yd.get(name)
            return section if isinstance(section, dict) else {}

        # Storage locations
        self.SQLITE_DB_PATH = os.path.abspath(
            _get("SQLITE_DB_PATH", "sqlite_db_path", _DEFAULTS["sqlite_db_path"]))
        self.VECTOR_PERSIST_DIR = os.path.abspath(
            _get("CHROMA_PERSIST_DIRECTORY", "vector_persist_dir",
                 _DEFAULTS["vector_persist_dir"]))

        # Embeddings
        provider = _get("EMBEDDING_PROVIDER", "embedding_provider",
                        _DEFAULTS["embedding_provider"]).lower()
        self.EMBEDDING_PROVIDER = provider if provider in EMBEDDING_PROVIDERS else "auto"
        self.EMBEDDING_MODEL = _get("EMBEDDING_MODEL", "embedding_model",
                                    _DEFAULTS["embedding_model"])
        self.EMBEDDING_DIMENSIONS = _get("EMBEDDING_DIMENSIONS", "embedding_dimensions",
                                         _DEFAULTS["embedding_dimensions"], cast=int)
        self.EMBEDDING_MAX_RETRIES = _get("EMBEDDING_MAX_RETRIES", "embedding_max_retries",
                                          _DEFAULTS["embedding_max_retries"], cast=int)

        # OpenAI
        openai_section = _section("openai")
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        # Azure OpenAI
        azure_section = _section("azure")
        self.AZURE_OPENAI_API_KEY = os.getenv("AZURE_OPENAI_API_KEY") or azure_section.get(
            "api_key", "")
        self.AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT") or azure_section.get(
            "endpoint", "")
        self.AZURE_OPENAI_DEPLOYMENT_NAME = (
            os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME")
            or azure_section.get("deployment_name", "")
        )
        self.AZURE_OPENAI_API_VERSION = (
            os.getenv("AZURE_OPENAI_API_VERSION")
            or azure_section.get("api_version", _DEFAULTS["azure_api_version"])
        )

        # Ollama
        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url",
                                    _DEFAULTS["ollama_base_url"])

        # Project import
        self.DEFAULT_PROJECT_PATH = _get("DEFAULT_PROJECT_PATH", "default_project_path",
                                         os.getcwd())

        # Graph traversal guard
        self.TRAVERSAL_MAX_EDGES = _get("TRAVERSAL_MAX_EDGES", "traversal_max_edges",
                                        _DEFAULTS["traversal_max_edges"], cast=int)

        self.LOG_LEVEL = _get("LOG_LEVEL", "log_level", _DEFAULTS["log_level"]).upper()

    @property
    def azure_configured(self) -> bool:
        return bool(self.AZURE_OPENAI_API_KEY and self.AZURE_OPENAI_ENDPOINT)

    def resolve_embedding_provider(self) -> str:
        """Return the concrete provider name, resolving ``auto``."""
        if self.EMBEDDING_PROVIDER != "auto":
            return self.EMBEDDING_PROVIDER
        if self.azure_configured:
            return "azure"
        if self.OPENAI_API_KEY:
            return "openai"
        return "local"

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)

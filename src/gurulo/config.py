"""Gurulo configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

GURULO_HOME = Path(os.environ.get("GURULO_HOME", str(Path.home() / ".gurulo")))
GURULO_CONFIG = GURULO_HOME / "config.json"
GURULO_DB = GURULO_HOME / "gurulo.db"
GURULO_LOGS = GURULO_HOME / "logs"


@dataclass
class RouterConfig:
    """Query routing thresholds."""

    greeting_max_words: int = 8
    greeting_max_extra_words: int = 3
    long_min_words: int = 40
    long_min_chars: int = 250
    long_min_sentences: int = 3
    short_max_words: int = 25
    short_max_chars: int = 160


@dataclass
class ContextConfig:
    """Context window budget."""

    token_budget: int = 1500
    max_chunk_bytes: int = 80 * 1024
    live_file_limit: int = 10
    knowledge_k: int = 3
    recent_limit: int = 10
    recent_read_limit: int = 6
    cache_ttl_seconds: float = 60.0
    knowledge_base_path: str = ""


@dataclass
class ModelConfig:
    """Completion backend settings.

    Defaults target the Groq OpenAI-compatible endpoint. Override with:
        gurulo config models.large=llama-3.3-70b-versatile
    """

    api_base: str = "https://api.groq.com/openai/v1"
    api_key: str = ""
    small: str = "llama-3.1-8b-instant"
    large: str = "llama-3.3-70b-versatile"
    small_label: str = "LLaMA 3.1 8B Instant"
    large_label: str = "LLaMA 3.3 70B Versatile"
    temperature: float = 0.7
    small_max_tokens: int = 2200
    large_max_tokens: int = 4000
    request_timeout: float = 45.0
    stream_timeout: float = 60.0
    max_retries: int = 3
    offline_mode: bool = False


@dataclass
class SafetyConfig:
    """Human-in-the-loop confirmation settings."""

    confirmation_timeout: float = 300.0
    max_pending_actions: int = 10
    pending_ttl_seconds: float = 600.0


@dataclass
class ExecutorConfig:
    """Sandboxed action execution settings."""

    project_root: str = ""
    package_manager: str = "npm"
    write_timeout: float = 10.0
    install_timeout: float = 60.0
    command_timeout: float = 30.0
    max_stdout_chars: int = 10_000
    max_stderr_chars: int = 5_000
    max_audit_param_chars: int = 2_000
    audit_capacity: int = 100
    persist_audit: bool = True


@dataclass
class GuruloConfig:
    """Top-level Gurulo configuration."""

    router: RouterConfig = field(default_factory=RouterConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "GuruloConfig":
        """Load config from disk or return defaults.

        Env vars override file config for credentials, endpoints and
        the project root.
        """
        config = cls()
        config_path = path or GURULO_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            for section in ("router", "context", "models", "safety", "executor"):
                if section in data:
                    target = getattr(config, section)
                    for k, v in data[section].items():
                        if hasattr(target, k):
                            setattr(target, k, v)

        api_key = os.environ.get("GROQ_API_KEY")
        api_base = os.environ.get("GURULO_API_BASE")
        small_model = os.environ.get("GURULO_SMALL_MODEL")
        large_model = os.environ.get("GURULO_LARGE_MODEL")
        project_root = os.environ.get("GURULO_PROJECT_ROOT")

        if api_key:
            config.models.api_key = api_key
        if api_base:
            config.models.api_base = api_base
        if small_model:
            config.models.small = small_model
        if large_model:
            config.models.large = large_model
        if project_root:
            config.executor.project_root = project_root
        if os.environ.get("AI_OFFLINE_MODE") == "true":
            config.models.offline_mode = True

        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk (the API key is never written)."""
        config_path = path or GURULO_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = asdict(self)
        data["models"].pop("api_key", None)
        config_path.write_text(json.dumps(data, indent=2))

    def set_value(self, dotted_key: str, raw_value: str) -> None:
        """Set `section.key` from a string, coercing to the field's type."""
        section_name, _, key = dotted_key.partition(".")
        section = getattr(self, section_name, None)
        if section is None or not key or not hasattr(section, key):
            raise KeyError(f"Unknown config key: {dotted_key}")

        current = getattr(section, key)
        if isinstance(current, bool):
            value: object = raw_value.lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            value = int(raw_value)
        elif isinstance(current, float):
            value = float(raw_value)
        else:
            value = raw_value
        setattr(section, key, value)

    @property
    def project_root(self) -> Path:
        return Path(self.executor.project_root or os.getcwd()).expanduser().resolve()


def ensure_gurulo_home() -> None:
    """Create Gurulo home directory structure."""
    GURULO_HOME.mkdir(parents=True, exist_ok=True)
    GURULO_LOGS.mkdir(parents=True, exist_ok=True)

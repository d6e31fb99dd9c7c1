"""cvgraph configuration.

Resolution order (later wins):

  1. built-in defaults (``Settings`` field defaults)
  2. optional YAML file (``load_settings("cvgraph.yaml")``)
  3. environment variables, including a ``.env`` file in CWD or a parent

Environment variables
---------------------
CVGRAPH_DB_PATH / DB_PATH     SQLite file for checkpoints and threads
LLM_PROVIDER, LLM_MODEL       primary provider and model
CVGRAPH_LLM_FALLBACKS         comma-separated fallback providers
CVGRAPH_TEMPERATURE           0.0 – 1.0
CVGRAPH_MAX_TOKENS
CVGRAPH_MAX_RETRIES
CVGRAPH_MAX_STEPS             loop iterations per invocation
CVGRAPH_INVOKE_TIMEOUT        seconds for a whole invocation
CVGRAPH_NODE_TIMEOUT          seconds for a single node
CVGRAPH_RETRIEVAL_K           documents per retrieval, 1 – 20
CVGRAPH_LOG_LEVEL
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from cvgraph.retrieval import MAX_K

_ENV_KEYS = {
    "db_path": ("CVGRAPH_DB_PATH", "DB_PATH"),
    "llm_provider": ("LLM_PROVIDER",),
    "llm_model": ("LLM_MODEL",),
    "llm_fallbacks": ("CVGRAPH_LLM_FALLBACKS",),
    "temperature": ("CVGRAPH_TEMPERATURE",),
    "max_tokens": ("CVGRAPH_MAX_TOKENS",),
    "max_retries": ("CVGRAPH_MAX_RETRIES",),
    "max_steps": ("CVGRAPH_MAX_STEPS",),
    "invoke_timeout": ("CVGRAPH_INVOKE_TIMEOUT",),
    "node_timeout": ("CVGRAPH_NODE_TIMEOUT",),
    "retrieval_k": ("CVGRAPH_RETRIEVAL_K",),
    "log_level": ("CVGRAPH_LOG_LEVEL",),
}

_LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass(frozen=True)
class Settings:
    db_path: str = "./cv_builder.db"
    llm_provider: str = "anthropic"
    llm_model: str | None = None
    llm_fallbacks: tuple[str, ...] = ()
    temperature: float = 0.7
    max_tokens: int = 4096
    max_retries: int = 3
    max_steps: int = 50
    invoke_timeout: float | None = None
    node_timeout: float | None = None
    retrieval_k: int = 4
    log_level: str = "info"
    extra: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "Settings":
        """Raise ValueError naming the first out-of-range setting."""
        if not 0.0 <= self.temperature <= 1.0:
            raise ValueError(f"temperature must be within 0..1, got {self.temperature}")
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        for name in ("invoke_timeout", "node_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if not 1 <= self.retrieval_k <= MAX_K:
            raise ValueError(f"retrieval_k must be within 1..{MAX_K}, got {self.retrieval_k}")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}")
        return self


def _coerce(name: str, raw: Any) -> Any:
    """Convert a YAML / env value to the type of field *name*."""
    if raw is None or raw == "":
        return None
    try:
        if name in ("temperature", "invoke_timeout", "node_timeout"):
            return float(raw)
        if name in ("max_tokens", "max_retries", "max_steps", "retrieval_k"):
            return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name}: cannot parse {raw!r}") from exc
    if name == "llm_fallbacks":
        items = raw.split(",") if isinstance(raw, str) else raw
        return tuple(str(p).strip() for p in items if str(p).strip())
    if name == "log_level":
        return str(raw).lower()
    return str(raw)


def _from_mapping(base: Settings, mapping: dict[str, Any]) -> Settings:
    known = {f.name for f in fields(Settings)} - {"extra"}
    changes = {k: _coerce(k, v) for k, v in mapping.items() if k in known}
    extra = {k: v for k, v in mapping.items() if k not in known}
    # None in a file or env means "unset" only for the nullable fields
    nullable = {"llm_model", "invoke_timeout", "node_timeout"}
    changes = {k: v for k, v in changes.items() if v is not None or k in nullable}
    if extra:
        changes["extra"] = {**base.extra, **extra}
    return replace(base, **changes)


def load_settings(path: str | Path | None = None, *, env: bool = True) -> Settings:
    """Build Settings from defaults, an optional YAML file, and the environment."""
    settings = Settings()

    if path is not None:
        path = Path(path)
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        settings = _from_mapping(settings, data)

    if env:
        load_dotenv(find_dotenv(usecwd=True))
        from_env: dict[str, Any] = {}
        for name, keys in _ENV_KEYS.items():
            for key in keys:
                if os.environ.get(key):
                    from_env[name] = os.environ[key]
                    break
        settings = _from_mapping(settings, from_env)

    return settings.validate()

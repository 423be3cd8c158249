"""Review settings: layered loading from defaults, YAML, CLI and environment.

``load_config`` returns a plain dict; ``build_review_config`` turns it into
the frozen ``ReviewConfig`` the engine runs on, falling back to defaults for
invalid numeric values.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import yaml

from difflens_core.errors import ConfigurationError
from difflens_core.models import ProviderFormat

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30000
DEFAULT_RETRY_DELAY = 1000
DEFAULT_MAX_RETRIES = 3
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 8000
DEFAULT_BATCH_SIZE = 5
DEFAULT_AST_SNIPPET_BUDGET = 25
DEFAULT_BATCH_CONCURRENCY = 2
MAX_BATCH_CONCURRENCY = 8
DEFAULT_MAX_REQUEST_CHARS = 50000
MIN_MAX_REQUEST_CHARS = 1000

DEFAULT_SYSTEM_PROMPT = """You are an experienced code reviewer. Analyse the code in depth, find every \
potential problem and give concrete, actionable suggestions.

Pay attention to:
1. Bugs and runtime errors: undefined names, null dereferences, type errors, logic errors
2. Performance: inefficient algorithms, needless loops, leaked or unreleased resources
3. Security: injection, XSS, CSRF, leaked secrets, unsafe API usage
4. Code quality: readability, maintainability, duplication, naming, missing comments
5. Best practices: error handling, boundary conditions, exceptional paths
6. Latent problems: patterns that work today but are likely to break later"""

DEFAULT_CONFIG: dict = {
    "enabled": True,
    "api_format": "openai",
    "api_endpoint": "",
    "api_key": None,
    "model": "",
    "timeout": DEFAULT_TIMEOUT,
    "temperature": DEFAULT_TEMPERATURE,
    "max_tokens": DEFAULT_MAX_TOKENS,
    "system_prompt": None,  # None = built-in reviewer persona
    "retry_count": DEFAULT_MAX_RETRIES,
    "retry_delay": DEFAULT_RETRY_DELAY,
    "diff_only": True,
    "batching_mode": "file_count",  # "file_count" | "ast_snippet"
    "batch_size": DEFAULT_BATCH_SIZE,
    "ast_snippet_budget": DEFAULT_AST_SNIPPET_BUDGET,
    "ast_chunk_strategy": "even",  # "even" | "contiguous"
    "batch_concurrency": DEFAULT_BATCH_CONCURRENCY,
    "max_request_chars": DEFAULT_MAX_REQUEST_CHARS,
    "include_lsp_context": True,
    "preview_only": False,
    "action": "warning",  # "block_commit" | "warning" | "log"
}

# Environment fallbacks, applied only when the merged value is empty.
_ENV_FALLBACKS = {
    "api_key": ("DIFFLENS_API_KEY", "OPENAI_API_KEY"),
    "api_endpoint": ("DIFFLENS_API_ENDPOINT",),
    "model": ("DIFFLENS_MODEL",),
}

_ENV_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")

_CHOICES = {
    "api_format": {f.value for f in ProviderFormat},
    "batching_mode": {"file_count", "ast_snippet"},
    "ast_chunk_strategy": {"even", "contiguous"},
    "action": {"block_commit", "warning", "log"},
}


def resolve_env_placeholders(value):
    """Substitute ``${VAR}`` in every string of ``value`` (recursively).

    Unknown variables are kept verbatim so that unresolved settings can be
    recognised later by their ``${`` marker.
    """
    if isinstance(value, str):

        def _sub(match: re.Match) -> str:
            name = match.group(1)
            if name in os.environ:
                return os.environ[name]
            logger.warning("Environment variable %s is not defined; keeping %s", name, match.group(0))
            return match.group(0)

        return _ENV_PLACEHOLDER_RE.sub(_sub, value)
    if isinstance(value, list):
        return [resolve_env_placeholders(item) for item in value]
    if isinstance(value, dict):
        return {key: resolve_env_placeholders(item) for key, item in value.items()}
    return value


def load_config(config_path: str = ".difflens.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .difflens.yml in the current directory
      3. CLI argument overrides
      4. Environment variables, for credentials and endpoint left empty
    """
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    for key, env_names in _ENV_FALLBACKS.items():
        if config.get(key):
            continue
        for env_name in env_names:
            if os.environ.get(env_name):
                config[key] = os.environ[env_name]
                break

    return resolve_env_placeholders(config)


def _positive_int(raw, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _non_negative_int(raw, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def _float(raw, default: float) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def get_ast_snippet_budget(config: dict) -> int:
    return max(1, _positive_int(config.get("ast_snippet_budget"), DEFAULT_AST_SNIPPET_BUDGET))


def get_batch_concurrency(config: dict) -> int:
    value = _positive_int(config.get("batch_concurrency"), DEFAULT_BATCH_CONCURRENCY)
    return max(1, min(MAX_BATCH_CONCURRENCY, value))


def get_max_request_chars(config: dict) -> int:
    return max(MIN_MAX_REQUEST_CHARS, _positive_int(config.get("max_request_chars"), DEFAULT_MAX_REQUEST_CHARS))


def normalize_endpoint(endpoint: str, api_format: ProviderFormat) -> str:
    endpoint = (endpoint or "").strip().rstrip("/")
    if api_format is ProviderFormat.OPENAI and endpoint and not endpoint.endswith("/chat/completions"):
        endpoint = f"{endpoint}/chat/completions"
    return endpoint


def _is_unresolved(value: str | None) -> bool:
    return bool(value) and "${" in value


@dataclass(frozen=True)
class ReviewConfig:
    """Resolved, typed view of the AI review settings."""

    enabled: bool
    api_format: ProviderFormat
    api_endpoint: str
    api_key: str | None
    model: str
    timeout: int
    temperature: float
    max_tokens: int
    system_prompt: str
    retry_count: int
    retry_delay: int
    diff_only: bool
    batching_mode: str
    batch_size: int
    ast_snippet_budget: int
    ast_chunk_strategy: str
    batch_concurrency: int
    max_request_chars: int
    include_lsp_context: bool
    preview_only: bool
    action: str

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000

    def check(self) -> None:
        """Raise ConfigurationError if no call can be made with these settings."""
        endpoint = self.api_endpoint
        if not endpoint:
            raise ConfigurationError("AI API endpoint is not configured")
        if _is_unresolved(endpoint):
            raise ConfigurationError(
                "AI API endpoint contains an unresolved environment variable; "
                "set DIFFLENS_API_ENDPOINT or write the full URL in .difflens.yml"
            )
        parsed = urlparse(endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            suffix = "..." if len(endpoint) > 60 else ""
            raise ConfigurationError(f"AI API endpoint URL is invalid: {endpoint[:60]}{suffix}")
        if self.api_format is ProviderFormat.OPENAI:
            if not self.model:
                raise ConfigurationError("AI model is not configured")
            if _is_unresolved(self.model):
                raise ConfigurationError("AI model contains an unresolved environment variable")
        if _is_unresolved(self.api_key):
            raise ConfigurationError("AI API key contains an unresolved environment variable")

    def warn_about_api_key(self) -> None:
        key = (self.api_key or "").strip()
        if not key:
            logger.warning("AI API key is not configured; set DIFFLENS_API_KEY or OPENAI_API_KEY")
        elif len(key) < 8:
            logger.warning("AI API key looks too short to be valid")


def _choice(config: dict, key: str) -> str:
    value = config.get(key) or DEFAULT_CONFIG[key]
    if value not in _CHOICES[key]:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}. Choose one of {sorted(_CHOICES[key])}.")
    return value


def build_review_config(config: dict) -> ReviewConfig:
    """Turn a merged config dict (see load_config) into a ReviewConfig."""
    api_format = ProviderFormat(_choice(config, "api_format"))
    return ReviewConfig(
        enabled=bool(config.get("enabled", True)),
        api_format=api_format,
        api_endpoint=normalize_endpoint(config.get("api_endpoint") or "", api_format),
        api_key=(config.get("api_key") or None),
        model=(config.get("model") or "").strip(),
        timeout=_positive_int(config.get("timeout"), DEFAULT_TIMEOUT),
        temperature=_float(config.get("temperature"), DEFAULT_TEMPERATURE),
        max_tokens=_positive_int(config.get("max_tokens"), DEFAULT_MAX_TOKENS),
        system_prompt=config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
        retry_count=_non_negative_int(config.get("retry_count"), DEFAULT_MAX_RETRIES),
        retry_delay=_positive_int(config.get("retry_delay"), DEFAULT_RETRY_DELAY),
        diff_only=config.get("diff_only", True) is not False,
        batching_mode=_choice(config, "batching_mode"),
        batch_size=_positive_int(config.get("batch_size"), DEFAULT_BATCH_SIZE),
        ast_snippet_budget=get_ast_snippet_budget(config),
        ast_chunk_strategy=_choice(config, "ast_chunk_strategy"),
        batch_concurrency=get_batch_concurrency(config),
        max_request_chars=get_max_request_chars(config),
        include_lsp_context=config.get("include_lsp_context", True) is not False,
        preview_only=config.get("preview_only") is True,
        action=_choice(config, "action"),
    )

import fnmatch
import os
from pathlib import Path
from typing import Optional

import yaml

from prwarden_core.retry import STANDARD_RETRY, RetryPolicy, quota_policy

DEFAULT_CONFIG: dict = {
    "model": "anthropic",
    "model_id": "claude-sonnet-4-20250514",  # shown in the summary footer
    "compaction_model": None,  # None = deterministic compaction summaries, no extra model calls
    "context_window": 120000,
    "max_files": 50,
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "retry_attempts": 3,
    "quota_max_elapsed_seconds": 3600,
    "quota_min_attempts": 12,
    "debug": False,
}


def load_config(config_path: str = ".prwarden.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prwarden.yml in the current directory
      3. CLI argument overrides
    """
    config = {**DEFAULT_CONFIG, "exclude": list(DEFAULT_CONFIG["exclude"])}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def retry_policies(config: dict) -> tuple[RetryPolicy, RetryPolicy]:
    """Return the (standard, quota) retry profiles with configured quota limits applied."""
    return STANDARD_RETRY, quota_policy(
        max_elapsed=config.get("quota_max_elapsed_seconds"),
        min_attempts=config.get("quota_min_attempts"),
    )


def build_summarizer(config: dict):
    """Return a summarizer for ``compaction_model``, or None when none is configured."""
    compaction_model = config.get("compaction_model")
    if not compaction_model:
        return None
    provider = config["model"]
    if provider == "anthropic":
        from prwarden_core.providers.anthropic import AnthropicSummarizer

        return AnthropicSummarizer(api_key=config["anthropic_api_key"], model=compaction_model)
    if provider == "openai":
        from prwarden_core.providers.openai import OpenAISummarizer

        return OpenAISummarizer(api_key=config["openai_api_key"], model=compaction_model)
    raise ValueError(f"Unknown model provider: {provider!r}. Choose 'anthropic' or 'openai'.")


def is_excluded(filename: str, patterns: list[str]) -> bool:
    """Return True if filename matches any exclude pattern.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py"
    - fnmatch globs on the basename: "*.lock", "*.min.js"
    - Directory names/prefixes: "migrations/", "tests" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False

import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "model": "anthropic",  # anthropic | openai | claude-cli
    "gitlab_url": "https://gitlab.com",
    "bot_username": None,  # service account whose addition as reviewer triggers a review
    "max_chars_per_file": 20000,
    "guidelines": None,  # None = use built-in default; set to a path string to override
    "exclude": [],  # fnmatch patterns or directory names left out of the prompt
    "clone_timeout": 120,  # seconds before a checkout is abandoned
    "max_tool_rounds": 25,
    "post_concurrency": 4,
    "skip_reviewed_heads": False,
    "log_level": "INFO",
}

BUILTIN_GUIDELINES_DIR = Path(__file__).parent / "guidelines"
_BUILTIN_DEFAULT = BUILTIN_GUIDELINES_DIR / "review.md"


def load_config(config_path: str = ".mrlens.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .mrlens.yml in the current directory
      3. GITLAB_URL / GITLAB_BOT_USERNAME from the environment
      4. CLI argument overrides

    This is the only place that reads the process environment. The returned
    dict is passed explicitly to everything that needs it.
    """
    config = {**DEFAULT_CONFIG, "exclude": list(DEFAULT_CONFIG["exclude"])}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    # Instance settings may also come from the environment (CI variables).
    if os.environ.get("GITLAB_URL"):
        config["gitlab_url"] = os.environ["GITLAB_URL"]
    if os.environ.get("GITLAB_BOT_USERNAME"):
        config["bot_username"] = os.environ["GITLAB_BOT_USERNAME"]

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    config["gitlab_url"] = str(config["gitlab_url"]).rstrip("/")

    # Resolve credentials from environment variables
    config["gitlab_token"] = os.environ.get("GITLAB_TOKEN")
    config["webhook_secret"] = os.environ.get("GITLAB_WEBHOOK_SECRET")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def load_guidelines(config: dict) -> str:
    """
    Load review guidelines.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Otherwise falls back to the built-in default.
    """
    custom_path = config.get("guidelines")
    if custom_path:
        p = Path(custom_path)
        if not p.exists():
            raise FileNotFoundError(f"Guidelines file not found: {custom_path}")
        return p.read_text()

    if _BUILTIN_DEFAULT.exists():
        return _BUILTIN_DEFAULT.read_text()

    raise FileNotFoundError("No guidelines configured and built-in default is missing.")

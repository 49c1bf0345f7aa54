"""
Config loader for ragdesk.
Reads config.yaml once at startup. All other modules import from here.
Secrets live in the environment (or .env) and are pulled in with ${ENV_VAR}.
"""

import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(os.environ.get(
    "RAGDESK_CONFIG",
    Path(__file__).parent.parent / "config.yaml",
))

_config: dict | None = None

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I
)
MIN_SECRET_LENGTH = 32


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() reloads from disk."""
    global _config
    _config = None


def check_config(cfg: dict, production: bool = False) -> list[str]:
    """
    Sanity-check a loaded config.
    Returns a list of human-readable problems; empty means good to go.
    production=True adds the HTTPS / secure-cookie rules.
    """
    problems: list[str] = []

    up = cfg.get("upstream", {})
    if not str(up.get("url", "")).startswith(("http://", "https://")):
        problems.append("upstream.url: must be an http(s) URL")
    if not up.get("api_key"):
        problems.append("upstream.api_key: required")
    retries = up.get("max_retries", 3)
    if not isinstance(retries, int) or not 0 <= retries <= 10:
        problems.append("upstream.max_retries: must be an integer between 0 and 10")

    chat = cfg.get("chat", {})
    max_len = chat.get("max_message_length", 2000)
    if not isinstance(max_len, int) or max_len <= 0:
        problems.append("chat.max_message_length: must be a positive integer")

    sess = cfg.get("session", {})
    if len(str(sess.get("secret", ""))) < MIN_SECRET_LENGTH:
        problems.append(
            f"session.secret: must be at least {MIN_SECRET_LENGTH} characters"
        )
    same_site = sess.get("cookie", {}).get("same_site", "lax")
    if same_site not in ("strict", "lax", "none"):
        problems.append("session.cookie.same_site: must be strict, lax or none")

    ident = cfg.get("identity", {})
    for key in ("tenant_id", "client_id"):
        if not _UUID_RE.match(str(ident.get(key, ""))):
            problems.append(f"identity.{key}: must be a UUID")
    if not ident.get("client_secret"):
        problems.append("identity.client_secret: required")

    pattern = cfg.get("directory", {}).get("department_group_pattern", "")
    if pattern:
        try:
            re.compile(pattern)
        except re.error as e:
            problems.append(f"directory.department_group_pattern: invalid regex ({e})")

    if production:
        for key in ("redirect_uri", "post_logout_redirect_uri"):
            if not str(ident.get(key, "")).startswith("https://"):
                problems.append(f"identity.{key}: must use HTTPS in production")
        cookie = sess.get("cookie", {})
        if not cookie.get("secure", True):
            problems.append("session.cookie.secure: must be true in production")
        if not cookie.get("http_only", True):
            problems.append("session.cookie.http_only: must be true in production")

    return problems

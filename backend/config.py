"""
Runtime Configuration for chatrelay.

Provides a singleton RuntimeConfig class that holds provider credentials,
context budgets and transport settings, with runtime overrides via update().

Usage:
    from config import runtime_config
    ceiling = runtime_config.max_input_tokens
    runtime_config.update(history_limit=10)
"""

import json
import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent
DEFAULT_ENV_FILE = BASE_DIR.parent / "default-env.json"

# Fields never returned by to_dict()
_SECRET_FIELDS = {"client_secret", "database_url"}


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


def _env_bool(key: str, default: str = "false") -> bool:
    return os.environ.get(key, default).strip().lower() in ("1", "true", "yes")


def _load_default_env(path: Path = DEFAULT_ENV_FILE) -> Dict[str, Any]:
    """Read default-env.json used for local development, if present."""
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Error loading {path.name}: {e}")
        return {}


def _credentials_from_vcap(vcap: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pick AI Core credentials out of a VCAP_SERVICES document."""
    managed = vcap.get("aicore") or []
    if managed and managed[0].get("credentials"):
        return managed[0]["credentials"]

    for service in vcap.get("user-provided") or []:
        if service.get("name") == "ai-chat-app-aicore" and service.get("credentials"):
            return service["credentials"]
    return None


def load_provider_credentials(default_env_path: Path = DEFAULT_ENV_FILE) -> Dict[str, str]:
    """Resolve provider credentials.

    Lookup order: direct AICORE_* environment variables, VCAP_SERVICES,
    then default-env.json next to the project root.

    Returns:
        Dict with service_url, client_id, client_secret, auth_url
        (empty strings when nothing is configured)
    """
    creds: Optional[Dict[str, Any]] = None

    if os.environ.get("AICORE_SERVICE_URL") and os.environ.get("AICORE_CLIENT_ID"):
        creds = {
            "serviceurls": {"AI_API_URL": os.environ["AICORE_SERVICE_URL"]},
            "clientid": os.environ["AICORE_CLIENT_ID"],
            "clientsecret": os.environ.get("AICORE_CLIENT_SECRET", ""),
            "url": os.environ.get("AICORE_AUTH_URL", ""),
        }

    if creds is None and os.environ.get("VCAP_SERVICES"):
        try:
            creds = _credentials_from_vcap(json.loads(os.environ["VCAP_SERVICES"]))
        except ValueError as e:
            logger.error(f"Error parsing VCAP_SERVICES: {e}")

    if creds is None:
        default_env = _load_default_env(default_env_path)
        creds = _credentials_from_vcap(default_env.get("VCAP_SERVICES") or {})

    creds = creds or {}
    return {
        "service_url": (creds.get("serviceurls") or {}).get("AI_API_URL", ""),
        "client_id": creds.get("clientid", ""),
        "client_secret": creds.get("clientsecret", ""),
        "auth_url": creds.get("url", ""),
    }


def _search_deployment_default() -> str:
    explicit = os.environ.get("AICORE_PERPLEXITY_DEPLOYMENT_ID", "").strip()
    if explicit:
        return explicit
    return str(_load_default_env().get("AICORE_PERPLEXITY_DEPLOYMENT_ID", "") or "")


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # Provider deployment
    deployment_id: str = field(default_factory=lambda: os.environ.get("AICORE_DEPLOYMENT_ID", ""))
    resource_group: str = field(default_factory=lambda: _first_env("AICORE_RESOURCE_GROUP", default="default"))
    model_type: str = field(
        default_factory=lambda: _first_env("AICORE_MODEL_TYPE", default="anthropic").lower()
    )  # anthropic | openai
    search_deployment_id: str = field(default_factory=_search_deployment_default)
    model_name: str = field(default_factory=lambda: os.environ.get("AICORE_MODEL_NAME", "Unknown Model"))

    # Provider credentials (resolved once at startup)
    service_url: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    auth_url: str = ""

    # Provider request settings
    anthropic_version: str = "bedrock-2023-05-31"
    max_output_tokens: int = field(default_factory=lambda: int(os.environ.get("LLM_MAX_TOKENS", "4096")))
    temperature: float = field(default_factory=lambda: float(os.environ.get("LLM_TEMPERATURE", "0.7")))
    default_system_prompt: str = "You are a helpful AI Assistant."
    request_timeout_s: float = field(default_factory=lambda: float(os.environ.get("LLM_TIMEOUT_S", "120")))
    search_timeout_s: float = field(default_factory=lambda: float(os.environ.get("SEARCH_TIMEOUT_S", "60")))
    search_max_tokens: int = 1024
    token_refresh_margin_s: float = 60.0

    # Context budget
    context_window_tokens: int = field(default_factory=lambda: int(os.environ.get("LLM_CONTEXT_WINDOW", "200000")))
    response_reserve_tokens: int = field(default_factory=lambda: int(os.environ.get("LLM_RESPONSE_RESERVE", "8192")))
    context_safety_margin: float = 0.75
    chars_per_token: float = 2.3  # Pessimistic; extracted document text tokenizes worse than prose
    history_limit: int = field(default_factory=lambda: int(os.environ.get("CHAT_HISTORY_LIMIT", "20")))
    history_message_max_tokens: int = 4000
    image_token_estimate: int = 1000
    file_token_cap: int = 50000
    file_chars_per_token: float = 0.5
    file_budget_headroom_tokens: int = 1000

    # Memory collaborator
    memory_enabled: bool = field(default_factory=lambda: _env_bool("MEMORY_ENABLED", "true"))
    memory_similarity_threshold: float = field(
        default_factory=lambda: float(os.environ.get("MEMORY_SIMILARITY_THRESHOLD", "0.85"))
    )
    memory_max_per_extraction: int = field(default_factory=lambda: int(os.environ.get("MEMORY_MAX_PER_EXTRACTION", "3")))
    memory_max_retrieved: int = field(default_factory=lambda: int(os.environ.get("MEMORY_MAX_RETRIEVED", "5")))
    memory_min_retrieval_score: float = field(
        default_factory=lambda: float(os.environ.get("MEMORY_MIN_RETRIEVAL_SCORE", "0.4"))
    )

    # Attachment limits
    max_attachments: int = 5
    max_attachment_bytes: int = 5 * 1024 * 1024
    max_total_attachment_bytes: int = 20 * 1024 * 1024
    max_attachment_name_length: int = 255
    max_attachment_type_length: int = 100

    # Client transport supervision
    heartbeat_interval_s: float = 30.0
    reconnect_delay_s: float = 3.0

    # Persistence
    database_url: str = field(default_factory=lambda: os.environ.get("DATABASE_URL", "").strip())
    database_enabled: bool = field(default_factory=lambda: _env_bool("DATABASE_ENABLED", "false"))
    database_pool_size: int = field(default_factory=lambda: int(os.environ.get("DATABASE_POOL_SIZE", "10")))

    # Environment
    environment: str = field(default_factory=lambda: _first_env("CHATRELAY_ENV", "NODE_ENV", default="development"))

    # Logging
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO").upper())
    log_color: bool = field(default_factory=lambda: _env_bool("LOG_COLOR", "true"))

    def __post_init__(self):
        if not self.service_url:
            creds = load_provider_credentials()
            self.service_url = creds["service_url"]
            self.client_id = creds["client_id"]
            self.client_secret = creds["client_secret"]
            self.auth_url = creds["auth_url"]

    @property
    def max_input_tokens(self) -> int:
        """Hard input ceiling: (window - reserve) * margin."""
        return int((self.context_window_tokens - self.response_reserve_tokens) * self.context_safety_margin)

    @property
    def max_input_chars(self) -> float:
        return self.max_input_tokens * self.chars_per_token

    @property
    def history_message_max_chars(self) -> int:
        return int(self.history_message_max_tokens * self.chars_per_token)

    @property
    def search_enabled(self) -> bool:
        return bool(self.search_deployment_id)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def update(self, **kwargs) -> Dict[str, Any]:
        """Update configuration values.

        Returns:
            Dict of the keys that changed, with their new values

        Raises:
            KeyError: If a key is not a known configuration field
        """
        known = {f.name for f in fields(self)}
        changed = {}
        for key, value in kwargs.items():
            if key not in known:
                raise KeyError(f"Unknown config key: {key}")
            if getattr(self, key) != value:
                setattr(self, key, value)
                changed[key] = value
        if changed:
            logger.info(f"Runtime config updated: {sorted(changed)}")
        return changed

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the configuration (secrets omitted)."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in _SECRET_FIELDS}


runtime_config = RuntimeConfig()

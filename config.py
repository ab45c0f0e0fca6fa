"""
Configuration module for the agentic task engine.
Handles environment variables, model specifications, context-window budgets,
auto-approval settings and tool reliability defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


DEFAULT_CONTEXT_WINDOW = 128000

# context window -> tokens reserved for the response and the next turn's growth
DEFAULT_CONTEXT_BUFFER_TIERS: Dict[int, int] = {
    64000: 27000,
    128000: 30000,
    200000: 40000,
}


def _parse_buffer_tiers(raw: str) -> Dict[int, int]:
    """Parse "64000:27000,128000:30000" into a tier table. Empty input keeps the defaults."""
    if not raw.strip():
        return dict(DEFAULT_CONTEXT_BUFFER_TIERS)
    tiers: Dict[int, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        window, _, reserved = part.partition(":")
        try:
            tiers[int(window)] = int(reserved)
        except ValueError:
            raise ValueError(f"Invalid CONTEXT_BUFFER_TIERS entry: {part!r}")
    return tiers


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-20250514-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "8192"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "0")) if os.getenv("TEMPERATURE") else None


@dataclass
class AppConfig:
    """Application-specific configuration"""
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    tasks_directory: str = os.getenv(
        "TASKS_DIRECTORY", os.path.join(os.path.expanduser("~"), ".task-engine", "tasks")
    )
    # Consecutive model mistakes before the user is asked for guidance
    max_consecutive_mistakes: int = int(os.getenv("MAX_CONSECUTIVE_MISTAKES", "3"))
    # Seconds between abort checks while waiting on the next stream increment
    stream_poll_interval: float = float(os.getenv("STREAM_POLL_INTERVAL", "0.1"))
    # Debounce window for conversation history writes
    history_persist_debounce_ms: int = int(os.getenv("HISTORY_PERSIST_DEBOUNCE_MS", "300"))
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "120"))
    checkpoints_enabled: bool = os.getenv("CHECKPOINTS_ENABLED", "true").lower() == "true"


@dataclass
class AutoApprovalConfig:
    """Which tool classes run without asking, and how many requests in a row"""
    enabled: bool = os.getenv("AUTO_APPROVE", "false").lower() == "true"
    max_requests: int = int(os.getenv("AUTO_APPROVE_MAX_REQUESTS", "20"))
    read_files: bool = os.getenv("AUTO_APPROVE_READS", "false").lower() == "true"
    edit_files: bool = os.getenv("AUTO_APPROVE_EDITS", "false").lower() == "true"
    execute_commands: bool = os.getenv("AUTO_APPROVE_COMMANDS", "false").lower() == "true"


@dataclass
class TruncationConfig:
    """Context-window budget used to decide when history gets truncated"""
    buffer_tiers: Dict[int, int] = field(
        default_factory=lambda: _parse_buffer_tiers(os.getenv("CONTEXT_BUFFER_TIERS", ""))
    )
    # Untiered windows: ceiling is max(window - fallback_buffer, window * fallback_ratio)
    fallback_buffer: int = int(os.getenv("CONTEXT_FALLBACK_BUFFER", "40000"))
    fallback_ratio: float = float(os.getenv("CONTEXT_FALLBACK_RATIO", "0.8"))


@dataclass
class ReliabilityConfig:
    """Defaults for tool-call retry and pattern analysis"""
    max_attempts: int = int(os.getenv("TOOL_RETRY_MAX_ATTEMPTS", "3"))
    delay_ms: int = int(os.getenv("TOOL_RETRY_DELAY_MS", "1000"))
    pattern_window_hours: float = float(os.getenv("TOOL_PATTERN_WINDOW_HOURS", "24"))
    suggestion_min_success_rate: float = float(os.getenv("TOOL_SUGGESTION_MIN_SUCCESS_RATE", "0.7"))


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Prices are USD per million tokens.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "input_price": 3.0,
        "output_price": 15.0,
        "cache_write_price": 3.75,
        "cache_read_price": 0.3,
    },
    {
        "id": "us.anthropic.claude-3-7-sonnet-20250219-v1:0",
        "base_id": "anthropic.claude-3-7-sonnet-20250219-v1:0",
        "name": "Claude 3.7 Sonnet",
        "context_window": 200000,
        "max_output_tokens": 16000,
        "requires_profile": True,
        "input_price": 3.0,
        "output_price": 15.0,
        "cache_write_price": 3.75,
        "cache_read_price": 0.3,
    },
    {
        "id": "anthropic.claude-3-5-sonnet-20241022-v2:0",
        "base_id": "anthropic.claude-3-5-sonnet-20241022-v2:0",
        "name": "Claude 3.5 Sonnet v2",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
        "input_price": 3.0,
        "output_price": 15.0,
        "cache_write_price": 3.75,
        "cache_read_price": 0.3,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
        "input_price": 0.8,
        "output_price": 4.0,
        "cache_write_price": 1.0,
        "cache_read_price": 0.08,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()
auto_approval_config = AutoApprovalConfig()
truncation_config = TruncationConfig()
reliability_config = ReliabilityConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown IDs get a minimal fallback;
    callers should use .get(key, default) for anything optional."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": DEFAULT_CONTEXT_WINDOW,
        "max_output_tokens": 8192,
        "requires_profile": False,
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", DEFAULT_CONTEXT_WINDOW)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def calculate_cost(
    model_id: str,
    input_tokens: int,
    output_tokens: int,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    """Cost in USD for one request. Models without pricing cost 0."""
    m = get_model_config(model_id)
    return (
        m.get("input_price", 0.0) * input_tokens
        + m.get("output_price", 0.0) * output_tokens
        + m.get("cache_write_price", 0.0) * cache_write_tokens
        + m.get("cache_read_price", 0.0) * cache_read_tokens
    ) / 1_000_000


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"

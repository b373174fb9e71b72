"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class GatewayConfig:
    """Payment gateway connection configuration."""

    base_url: str
    api_key: str


@dataclass(frozen=True)
class EnginePolicy:
    """Named policy constants for the bill-pay engine.

    Every value can be overridden through a ``BILLFLOW_*`` environment
    variable, see :func:`get_policy`.
    """

    confidence_threshold: float = 0.5
    default_due_days: int = 30
    default_approval_threshold: Decimal = Decimal("1000")
    extraction_timeout: float = 30.0
    processor_timeout: float = 15.0
    processor_max_attempts: int = 3
    payment_failure_limit: int = 3
    approval_step_hours: int = 48
    default_approver_role: str = "manager"
    fallback_approver_role: str = "finance_admin"
    vendor_match_threshold: float = 0.8


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_document_store_path() -> Path:
    """Return the BILLFLOW_DOCUMENT_PATH, defaulting to ./data/documents.

    Always resolves to an absolute path to avoid issues if the
    working directory changes during execution.
    """
    return Path(os.environ.get("BILLFLOW_DOCUMENT_PATH", "./data/documents")).resolve()


def get_gateway_config() -> GatewayConfig:
    """Build payment gateway configuration from environment variables.

    Required: PAYMENT_GATEWAY_URL, PAYMENT_GATEWAY_API_KEY
    """
    base_url = os.environ.get("PAYMENT_GATEWAY_URL")
    api_key = os.environ.get("PAYMENT_GATEWAY_API_KEY")

    missing = []
    if not base_url:
        missing.append("PAYMENT_GATEWAY_URL")
    if not api_key:
        missing.append("PAYMENT_GATEWAY_API_KEY")

    if missing:
        msg = f"Required environment variables not set: {', '.join(missing)}"
        raise ValueError(msg)

    return GatewayConfig(
        base_url=base_url.rstrip("/"),  # type: ignore[union-attr]
        api_key=api_key,  # type: ignore[arg-type]
    )


def get_anthropic_api_key() -> str:
    """Return the ANTHROPIC_API_KEY from the environment."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    if not key:
        msg = "ANTHROPIC_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def get_approver_roles() -> dict[str, frozenset[str]]:
    """Parse BILLFLOW_APPROVER_ROLES into actor -> roles.

    Format: ``alice=manager|finance_admin,bob=manager``. Unset means
    nobody may approve.
    """
    raw = os.environ.get("BILLFLOW_APPROVER_ROLES", "").strip()
    roles: dict[str, frozenset[str]] = {}
    if not raw:
        return roles
    for entry in raw.split(","):
        actor, sep, names = entry.partition("=")
        if not sep or not actor.strip():
            msg = f"BILLFLOW_APPROVER_ROLES entry must be actor=role[|role]: {entry!r}"
            raise ValueError(msg)
        roles[actor.strip()] = frozenset(
            name.strip() for name in names.split("|") if name.strip()
        )
    return roles


def get_policy() -> EnginePolicy:
    """Build the engine policy, applying BILLFLOW_* overrides."""
    defaults = EnginePolicy()
    return EnginePolicy(
        confidence_threshold=_env_float(
            "BILLFLOW_CONFIDENCE_THRESHOLD", defaults.confidence_threshold
        ),
        default_due_days=_env_int("BILLFLOW_DEFAULT_DUE_DAYS", defaults.default_due_days),
        default_approval_threshold=_env_decimal(
            "BILLFLOW_APPROVAL_THRESHOLD", defaults.default_approval_threshold
        ),
        extraction_timeout=_env_float(
            "BILLFLOW_EXTRACTION_TIMEOUT", defaults.extraction_timeout
        ),
        processor_timeout=_env_float(
            "BILLFLOW_PROCESSOR_TIMEOUT", defaults.processor_timeout
        ),
        processor_max_attempts=_env_int(
            "BILLFLOW_PROCESSOR_MAX_ATTEMPTS", defaults.processor_max_attempts
        ),
        payment_failure_limit=_env_int(
            "BILLFLOW_PAYMENT_FAILURE_LIMIT", defaults.payment_failure_limit
        ),
        approval_step_hours=_env_int(
            "BILLFLOW_APPROVAL_STEP_HOURS", defaults.approval_step_hours
        ),
        default_approver_role=os.environ.get(
            "BILLFLOW_DEFAULT_APPROVER_ROLE", defaults.default_approver_role
        ),
        fallback_approver_role=os.environ.get(
            "BILLFLOW_FALLBACK_APPROVER_ROLE", defaults.fallback_approver_role
        ),
        vendor_match_threshold=_env_float(
            "BILLFLOW_VENDOR_MATCH_THRESHOLD", defaults.vendor_match_threshold
        ),
    )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        msg = f"{name} must be a number, got {raw!r}"
        raise ValueError(msg) from None


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        msg = f"{name} must be a decimal amount, got {raw!r}"
        raise ValueError(msg) from None

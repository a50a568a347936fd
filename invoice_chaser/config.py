"""
Invoice Chaser -- Configuration Module

Centralizes all configuration for the chase scheduler.
Loads defaults from dataclasses, overlays any overrides from config.yaml,
then applies environment variables (which always win).

Environment variables:
    APP_ENV                           development | production
    CRON_SECRET                       shared secret for the batch trigger
    CHASE_BATCH_LIMIT                 page size (clamped to 1..100)
    CHASE_DRY_RUN / DRY_RUN           "true" to simulate sends
    EMAIL_COOLDOWN_MINUTES_OVERRIDE   non-production only; 0 disables
    MAX_EMAILS_PER_DAY_PER_USER       deployment ceiling per tenant
    MAX_EMAILS_PER_DAY_GLOBAL         deployment ceiling overall
    ALLOWED_RECIPIENT_DOMAINS         comma-separated allowlist
    TEST_REDIRECT_EMAIL               redirect for disallowed recipients
    CHASER_DB_PATH                    SQLite database path

Usage:
    from invoice_chaser.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.dispatch.batch_size)             # 50
    print(cfg.is_production)                   # False
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .exceptions import ConfigurationError
from .models import Plan
from .plan_limiter import PLAN_LIMITS, PerTypeCaps, PlanLimits

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # invoice_chaser/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(*names: str) -> Optional[bool]:
    for name in names:
        raw = os.environ.get(name)
        if raw is not None and raw.strip():
            return raw.strip().lower() in _TRUE_VALUES
    return None


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


_PLAN_OVERRIDE_KEYS = {"daily_email_cap", "cooldown_minutes", "per_type_caps", "max_late_week"}
_PER_TYPE_CAP_KEYS = {"initial", "reminder", "due", "late_weekly"}


def _limit_value(path: str, value: Any, *, optional: bool = False) -> Optional[int]:
    """Coerce one plan-limit override to int; YAML ``null`` allowed when *optional*."""
    if value is None and optional:
        return None
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigurationError(f"{path} must be a whole number, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{path} must be a whole number, got {value!r}") from None


# ===================================================================
# 1. Schedule policy
# ===================================================================

@dataclass
class ScheduleConfig:
    """Business-morning policy and schedule windows."""
    utc_offset_hours: int = -6        # fixed offset, no DST (America/Chicago standard time)
    business_hour: int = 9
    reminder_days_before: int = 3
    late_weeks: int = 8
    short_fuse_delay_minutes: int = 10


# ===================================================================
# 2. Batch dispatch
# ===================================================================

@dataclass
class DispatchConfig:
    """Batch trigger settings."""
    batch_size: int = 50
    dry_run: bool = False
    lookback_days: int = 63
    lookahead_days: int = 30

    def __post_init__(self):
        env_size = _env_int("CHASE_BATCH_LIMIT")
        if env_size is not None:
            self.batch_size = env_size
        env_dry = _env_bool("CHASE_DRY_RUN", "DRY_RUN")
        if env_dry is not None:
            self.dry_run = env_dry


# ===================================================================
# 3. Rate limits
# ===================================================================

@dataclass
class LimitsConfig:
    """Deployment-wide ceilings on top of the plan table.

    ``plan_limits`` holds per-plan overrides keyed by plan name, e.g.
    ``{"trial": {"daily_email_cap": 20}}``.
    """
    cooldown_override_minutes: Optional[int] = None
    tenant_daily_ceiling: Optional[int] = None
    global_daily_cap: Optional[int] = None
    plan_limits: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        for attr, env in (
            ("cooldown_override_minutes", "EMAIL_COOLDOWN_MINUTES_OVERRIDE"),
            ("tenant_daily_ceiling", "MAX_EMAILS_PER_DAY_PER_USER"),
            ("global_daily_cap", "MAX_EMAILS_PER_DAY_GLOBAL"),
        ):
            value = _env_int(env)
            if value is not None:
                setattr(self, attr, value)

    def build_plan_table(self) -> dict[Plan, PlanLimits]:
        """The reference plan table with ``plan_limits`` overrides applied.

        Raises:
            ConfigurationError: unknown plan or key, or a value that is not
                a whole number.
        """
        table = dict(PLAN_LIMITS)
        for name, overrides in (self.plan_limits or {}).items():
            plan = Plan.parse(name)
            if plan is None:
                raise ConfigurationError(f"Unknown plan in limits.plan_limits: {name!r}")
            if not isinstance(overrides, dict):
                raise ConfigurationError(f"limits.plan_limits.{name} must be a mapping")
            prefix = f"limits.plan_limits.{name}"
            unknown = sorted(map(str, set(overrides) - _PLAN_OVERRIDE_KEYS))
            if unknown:
                raise ConfigurationError(f"Unknown key(s) in {prefix}: {', '.join(unknown)}")

            base = table[plan]
            caps = base.per_type_caps
            if "per_type_caps" in overrides:
                raw_caps = overrides["per_type_caps"] or {}
                if not isinstance(raw_caps, dict):
                    raise ConfigurationError(f"{prefix}.per_type_caps must be a mapping")
                unknown = sorted(map(str, set(raw_caps) - _PER_TYPE_CAP_KEYS))
                if unknown:
                    raise ConfigurationError(
                        f"Unknown email type(s) in {prefix}.per_type_caps: {', '.join(unknown)} "
                        f"(expected {', '.join(sorted(_PER_TYPE_CAP_KEYS))})"
                    )
                merged = {**caps.__dict__, **raw_caps}
                caps = PerTypeCaps(**{
                    key: _limit_value(f"{prefix}.per_type_caps.{key}", value, optional=True)
                    for key, value in merged.items()
                })

            table[plan] = PlanLimits(
                daily_email_cap=_limit_value(
                    f"{prefix}.daily_email_cap", overrides.get("daily_email_cap", base.daily_email_cap)
                ),
                cooldown_minutes=_limit_value(
                    f"{prefix}.cooldown_minutes", overrides.get("cooldown_minutes", base.cooldown_minutes)
                ),
                per_type_caps=caps,
                max_late_week=_limit_value(
                    f"{prefix}.max_late_week", overrides.get("max_late_week", base.max_late_week), optional=True
                ),
            )
        return table


# ===================================================================
# 4. Security
# ===================================================================

@dataclass
class SecurityConfig:
    """Deployment environment and trigger secret."""
    environment: str = "development"
    trigger_secret: str = ""            # set via env var CRON_SECRET

    def __post_init__(self):
        self.environment = (os.environ.get("APP_ENV") or self.environment).strip().lower()
        self.trigger_secret = os.environ.get("CRON_SECRET", "") or self.trigger_secret


# ===================================================================
# 5. Recipient guard
# ===================================================================

@dataclass
class RecipientConfig:
    """Optional recipient-domain allowlist for non-production deployments."""
    allowed_domains: list[str] = field(default_factory=list)
    test_redirect_email: str = ""

    def __post_init__(self):
        raw = os.environ.get("ALLOWED_RECIPIENT_DOMAINS")
        if raw:
            self.allowed_domains = [d.strip().lower() for d in raw.split(",") if d.strip()]
        self.test_redirect_email = (
            os.environ.get("TEST_REDIRECT_EMAIL", "").strip() or self.test_redirect_email
        )


# ===================================================================
# 6. Storage
# ===================================================================

@dataclass
class StorageConfig:
    """Where the database, outbox and log file live."""
    database_path: str = "data/invoice_chaser.db"
    outbox_path: str = "output/outbox.jsonl"
    log_file: str = ""

    def __post_init__(self):
        self.database_path = os.environ.get("CHASER_DB_PATH", "") or self.database_path

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class ChaserConfig:
    """Top-level configuration container for the chase scheduler."""
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    recipients: RecipientConfig = field(default_factory=RecipientConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @property
    def is_production(self) -> bool:
        return self.security.environment == "production"


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: ChaserConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a ChaserConfig instance."""
    _section_map = {
        "schedule": cfg.schedule,
        "dispatch": cfg.dispatch,
        "limits": cfg.limits,
        "security": cfg.security,
        "recipients": cfg.recipients,
        "storage": cfg.storage,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)
                else:
                    logger.warning("Ignoring unknown config key %s.%s", section_key, attr)


def get_config(yaml_path: Optional[str | Path] = None) -> ChaserConfig:
    """Build a ChaserConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated ChaserConfig instance.  Environment variables are
        re-applied after the YAML overlay so they take precedence.
    """
    cfg = ChaserConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if yaml_path and not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")
        _apply_yaml_to_config(cfg, data)
        for section in (cfg.dispatch, cfg.limits, cfg.security, cfg.recipients, cfg.storage):
            section.__post_init__()

    return cfg

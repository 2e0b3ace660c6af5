"""
Invoice Reminders -- Configuration Module

Centralizes all configuration for the reminder service.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from invoice_reminders.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.smtp.host)                       # smtp.gmail.com
    print(cfg.defaults.max_reminders)          # 3
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .models import (
    DEFAULT_EMAIL_SIGNATURE,
    DEFAULT_FIRST_REMINDER_OFFSET_DAYS,
    DEFAULT_FOLLOW_UP_INTERVAL_DAYS,
    DEFAULT_MAX_REMINDERS,
    ReminderPolicyConfig,
    Tone,
)

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # invoice_reminders/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
PACKAGE_TEMPLATE_DIR = _THIS_DIR / "templates"


# ===================================================================
# 1. Default reminder policy for new users
# ===================================================================

@dataclass
class PolicyDefaults:
    """Values a user's settings start from on first access."""
    automated_reminders_enabled: bool = True
    first_reminder_offset_days: int = DEFAULT_FIRST_REMINDER_OFFSET_DAYS
    follow_up_interval_days: int = DEFAULT_FOLLOW_UP_INTERVAL_DAYS
    max_reminders: int = DEFAULT_MAX_REMINDERS
    first_tone: str = Tone.POLITE.value
    second_tone: str = Tone.FIRM.value
    third_tone: str = Tone.URGENT.value
    email_signature: str = DEFAULT_EMAIL_SIGNATURE


# ===================================================================
# 2. Clamp bounds
# ===================================================================

@dataclass
class PolicyLimits:
    """Inclusive bounds the loader clamps user settings into."""
    min_offset_days: int = -30
    max_offset_days: int = 30
    min_interval_days: int = 1
    max_interval_days: int = 30
    min_reminders: int = 1
    max_reminders: int = 10


# ===================================================================
# 3. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP configuration for the outbound reminder transport."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    timeout_seconds: int = 30
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password)


# ===================================================================
# 4. Sender identity
# ===================================================================

@dataclass
class SenderInfo:
    """Default FROM identity when the user has none of their own."""
    name: str = "Invoice Reminders"
    email: str = ""

    def __post_init__(self):
        self.email = self.email or os.environ.get("REMINDER_FROM_EMAIL", "")


# ===================================================================
# 5. Storage
# ===================================================================

@dataclass
class StorageConfig:
    """Where the SQLite database lives."""
    db_path: str = "reminders.db"

    @property
    def resolved_path(self) -> Path:
        p = Path(self.db_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 6. Output
# ===================================================================

@dataclass
class OutputConfig:
    """Where .eml files and logs are written."""
    eml_dir: str = "output/eml"
    log_file: str = ""

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 7. Templates
# ===================================================================

@dataclass
class TemplateConfig:
    """HTML layout location and whether reminders go out as HTML."""
    template_dir: str = ""
    use_html: bool = False

    @property
    def resolved_dir(self) -> Path:
        if not self.template_dir:
            return PACKAGE_TEMPLATE_DIR
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 8. Schedule
# ===================================================================

@dataclass
class ScheduleConfig:
    """Informational: the external scheduler owns the actual trigger."""
    run_time: str = "09:00"
    timezone: str = "UTC"


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class AppConfig:
    """Top-level configuration container."""
    defaults: PolicyDefaults = field(default_factory=PolicyDefaults)
    limits: PolicyLimits = field(default_factory=PolicyLimits)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    sender: SenderInfo = field(default_factory=SenderInfo)
    storage: StorageConfig = field(default_factory=StorageConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    templates: TemplateConfig = field(default_factory=TemplateConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    def default_policy(self) -> ReminderPolicyConfig:
        """The normalized policy a brand-new user starts with."""
        return normalize_policy_config(vars(self.defaults), self.limits)


# ===================================================================
# Policy normalization (the configuration loader)
# ===================================================================

def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


def _as_int(raw: Any, name: str, default: int) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be a whole number, got {raw!r}")
    try:
        return int(float(raw))
    except (TypeError, ValueError, OverflowError):
        raise ConfigurationError(f"{name} must be a whole number, got {raw!r}") from None


def _as_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, str):
        return raw.strip().lower() in ("true", "yes", "1", "on")
    return bool(raw)


def _as_tone(raw: Any, name: str, default: Tone) -> Tone:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        return Tone.parse(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name}: {exc}") from None


def normalize_policy_config(
    raw: Mapping[str, Any],
    limits: Optional[PolicyLimits] = None,
    defaults: Optional[ReminderPolicyConfig] = None,
) -> ReminderPolicyConfig:
    """Build a ReminderPolicyConfig from loosely-typed stored settings.

    Missing or null values fall back to ``defaults`` (the configured policy
    for new users, or the built-in one).  Out-of-range numbers are clamped
    into ``limits`` (so ``max_reminders=0`` becomes 1).  Values that cannot
    be interpreted at all raise ConfigurationError.
    """
    limits = limits or PolicyLimits()
    defaults = defaults or ReminderPolicyConfig()

    offset = _as_int(
        raw.get("first_reminder_offset_days"),
        "first_reminder_offset_days",
        defaults.first_reminder_offset_days,
    )
    interval = _as_int(
        raw.get("follow_up_interval_days"),
        "follow_up_interval_days",
        defaults.follow_up_interval_days,
    )
    max_reminders = _as_int(
        raw.get("max_reminders"), "max_reminders", defaults.max_reminders
    )

    return ReminderPolicyConfig(
        automated_reminders_enabled=_as_bool(
            raw.get("automated_reminders_enabled"),
            defaults.automated_reminders_enabled,
        ),
        first_reminder_offset_days=_clamp(
            offset, limits.min_offset_days, limits.max_offset_days
        ),
        follow_up_interval_days=_clamp(
            interval, max(1, limits.min_interval_days), limits.max_interval_days
        ),
        max_reminders=_clamp(
            max_reminders, max(1, limits.min_reminders), limits.max_reminders
        ),
        first_tone=_as_tone(raw.get("first_tone"), "first_tone", defaults.first_tone),
        second_tone=_as_tone(raw.get("second_tone"), "second_tone", defaults.second_tone),
        third_tone=_as_tone(raw.get("third_tone"), "third_tone", defaults.third_tone),
        business_name=str(raw.get("business_name") or defaults.business_name),
        email_signature=str(raw.get("email_signature") or defaults.email_signature),
    )


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: AppConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto an AppConfig instance."""
    _section_map = {
        "defaults": cfg.defaults,
        "limits": cfg.limits,
        "smtp": cfg.smtp,
        "sender": cfg.sender,
        "storage": cfg.storage,
        "output": cfg.output,
        "templates": cfg.templates,
        "schedule": cfg.schedule,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def _load_yaml(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def get_config(yaml_path: Optional[str | Path] = None) -> AppConfig:
    """Build an AppConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated AppConfig instance.

    Raises:
        ConfigurationError: If an explicitly given file is missing or
            unparseable, or the default policy is invalid.
    """
    cfg = AppConfig()

    if yaml_path is not None:
        path = Path(yaml_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
    else:
        path = DEFAULT_CONFIG_PATH

    if path.exists():
        _apply_yaml_to_config(cfg, _load_yaml(path))

    # Fail fast on bad tone names in the defaults section
    cfg.default_policy()
    return cfg

"""Configuration: YAML files under a config directory plus environment overrides."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///data/lead_autopilot.db"

SECRET_KEYS = ("SENDGRID_API_KEY", "FROM_EMAIL", "FROM_NAME", "MAILGUN_SIGNING_KEY", "YELP_API_KEY")


@dataclass
class Settings:
    """Loaded configuration."""

    runtime: Dict
    schedule: Dict
    scoring: Dict
    secrets: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def database_url(self) -> str:
        return self.runtime.get("database", {}).get("url") or DEFAULT_DATABASE_URL

    @property
    def targets(self) -> Dict:
        return self.runtime.setdefault("targets", {})

    @property
    def lifecycle(self) -> Dict:
        return self.runtime.setdefault("lifecycle", {})


def _load_yaml(config_path: Path, filename: str) -> Dict:
    """Load YAML config file."""
    config_file = config_path / filename
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file) as f:
        return yaml.safe_load(f) or {}


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(settings: Settings, env: Optional[Dict[str, str]] = None) -> Settings:
    """Environment wins over the YAML files."""
    env = os.environ if env is None else env

    if env.get("DATABASE_URL"):
        settings.runtime.setdefault("database", {})["url"] = env["DATABASE_URL"]
    if env.get("AUTO_EMAIL_THRESHOLD"):
        settings.lifecycle["auto_contact_threshold"] = int(env["AUTO_EMAIL_THRESHOLD"])
    if env.get("ENABLE_CRON"):
        settings.schedule["enabled"] = _parse_bool(env["ENABLE_CRON"])
    if env.get("TARGET_INDUSTRIES"):
        settings.targets["industries"] = _split_list(env["TARGET_INDUSTRIES"])
    if env.get("TARGET_LOCATIONS"):
        settings.targets["locations"] = _split_list(env["TARGET_LOCATIONS"])

    settings.secrets = {key: env.get(key) for key in SECRET_KEYS}
    return settings


def load_settings(config_dir="config", env: Optional[Dict[str, str]] = None) -> Settings:
    """
    Load runtime.yaml, schedule.yaml and scoring.yaml from ``config_dir``.

    Raises:
        FileNotFoundError: A config file is missing
    """
    config_path = Path(config_dir)
    settings = Settings(
        runtime=_load_yaml(config_path, "runtime.yaml"),
        schedule=_load_yaml(config_path, "schedule.yaml"),
        scoring=_load_yaml(config_path, "scoring.yaml"),
    )
    return apply_env_overrides(settings, env)

import logging
import yaml
from pathlib import Path
from typing import Optional, Tuple
from pydantic import ValidationError
from vea.domain.errors import ConfigError
from .encoder import ENCODER_CONFIG_NAMES, EncoderConfig, validation_messages
from .models import AppConfig

logger = logging.getLogger(__name__)


def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    return AppConfig(**data)


def find_encoder_config(batch_dir: Path) -> Optional[Path]:
    for name in ENCODER_CONFIG_NAMES:
        candidate = batch_dir / name
        if candidate.is_file():
            return candidate
    return None


def load_encoder_config(config_path: Path) -> Tuple[EncoderConfig, str]:
    """Loads a per-batch encoder config. Returns the model and the raw text.

    JSON configs from older batches are valid YAML and load the same way.
    """
    try:
        raw = config_path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise ConfigError(f"Unable to read encoder config {config_path}: {exc}") from exc

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Unable to parse encoder config {config_path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Encoder config {config_path} must be a mapping")

    try:
        return EncoderConfig(**data), raw
    except ValidationError as exc:
        details = "; ".join(validation_messages(exc))
        raise ConfigError(f"Invalid encoder config {config_path}: {details}") from exc


def write_default_encoder_config(path: Path) -> Path:
    """Writes a default encoder config, in the format the loader accepts."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = EncoderConfig().model_dump(by_alias=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    logger.info(f"Default encoder config written: {path}")
    return path

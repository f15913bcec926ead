"""
Converter Configuration
=======================
Loads the YAML configuration file and turns it into explicit, immutable
per-feed settings that are handed to the conversion pipeline.

The YAML file supports ``${VAR}`` and ``${VAR:default}`` environment variable
substitution, so deployments can point ``input_dir``/``output_dir`` at the
collector's output directory via ``OUTPUT_DIR``.

Example:
    converter:
      input_dir: ${OUTPUT_DIR:output}
      output_dir: ${OUTPUT_DIR:output}
      static_dir_template: "{feed}-static"
      feeds:
        - name: ToeiBus
    logging:
      level: INFO
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

from src.core.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
DEFAULT_DATA_DIR = "output"
DEFAULT_STATIC_DIR_TEMPLATE = "{feed}-static"
DEFAULT_FEEDS = ["ToeiBus"]

_ENV_PATTERN = re.compile(r'\$\{(\w+)(?::([^}]*))?\}')


@dataclass(frozen=True)
class FeedConfig:
    """
    Everything needed to convert one feed.

    Attributes:
        name: Feed name, e.g. ``ToeiBus``. Used for file selection, the log
            name and the translation key heuristic.
        input_dir: Directory holding the collected ``*.jsonl`` snapshot files.
        output_path: Destination of the XES document.
        static_source: GTFS static directory or ZIP file for this feed.
    """
    name: str
    input_dir: Path
    output_path: Path
    static_source: Path

    def validate(self) -> None:
        """
        Check the configuration before any table or snapshot I/O happens.

        Raises:
            ConfigurationError: If a value is missing or a directory is absent.
        """
        if not self.name or not self.name.strip():
            raise ConfigurationError("Feed name must not be empty")
        if not str(self.output_path).strip() or self.output_path.name == "":
            raise ConfigurationError(f"Invalid output path for feed {self.name}")
        if self.output_path.is_dir():
            raise ConfigurationError(
                f"Output path for feed {self.name} is a directory: {self.output_path}"
            )
        if not self.output_path.parent.is_dir():
            raise ConfigurationError(
                f"Output directory does not exist: {self.output_path.parent}"
            )
        if not self.input_dir.is_dir():
            raise ConfigurationError(
                f"Snapshot input directory does not exist: {self.input_dir}"
            )


@dataclass(frozen=True)
class AppConfig:
    """Top-level settings for a batch run over several feeds."""
    feeds: List[FeedConfig] = field(default_factory=list)
    log_level: str = "INFO"
    show_progress: bool = True

    def select(self, names: Optional[List[str]]) -> List[FeedConfig]:
        """
        Restrict the run to the named feeds, keeping configuration order.

        Raises:
            ConfigurationError: If a requested feed is not configured.
        """
        if not names:
            return list(self.feeds)

        known = {feed.name for feed in self.feeds}
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ConfigurationError(f"Unknown feed(s): {', '.join(unknown)}")
        return [feed for feed in self.feeds if feed.name in names]


def substitute_env(text: str) -> str:
    """Replace ``${VAR:default}`` placeholders with environment values."""
    def replace_env(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2) if match.group(2) else ""
        return os.getenv(var_name, default)

    return _ENV_PATTERN.sub(replace_env, text)


def default_config() -> Dict[str, Any]:
    """Return the configuration used when no file is present."""
    data_dir = os.getenv("OUTPUT_DIR", DEFAULT_DATA_DIR)
    return {
        'converter': {
            'input_dir': data_dir,
            'output_dir': data_dir,
            'static_dir_template': DEFAULT_STATIC_DIR_TEMPLATE,
            'show_progress': True,
            'feeds': [{'name': name} for name in DEFAULT_FEEDS]
        },
        'logging': {
            'level': 'INFO'
        }
    }


def _feed_from_dict(raw: Any, converter: Dict[str, Any]) -> FeedConfig:
    if isinstance(raw, str):
        raw = {'name': raw}
    if not isinstance(raw, dict) or not raw.get('name'):
        raise ConfigurationError(f"Feed entry must have a name: {raw!r}")

    name = str(raw['name'])
    input_dir = raw.get('input_dir', converter.get('input_dir'))
    output_dir = raw.get('output_dir', converter.get('output_dir'))
    if not input_dir:
        raise ConfigurationError(f"No input_dir configured for feed {name}")
    if not output_dir and not raw.get('output_path'):
        raise ConfigurationError(f"No output location configured for feed {name}")

    output_path = raw.get('output_path') or Path(output_dir) / f"{name}.xes"

    template = converter.get('static_dir_template', DEFAULT_STATIC_DIR_TEMPLATE)
    static_source = raw.get('static_source')
    if not static_source:
        try:
            static_source = template.format(feed=name)
        except (KeyError, IndexError) as e:
            raise ConfigurationError(f"Invalid static_dir_template {template!r}: {e}")

    return FeedConfig(
        name=name,
        input_dir=Path(input_dir),
        output_path=Path(output_path),
        static_source=Path(static_source)
    )


def build_app_config(raw: Dict[str, Any]) -> AppConfig:
    """
    Build an AppConfig from an already parsed configuration mapping.

    Raises:
        ConfigurationError: If the mapping has the wrong shape.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    converter = raw.get('converter') or {}
    if not isinstance(converter, dict):
        raise ConfigurationError("'converter' section must be a mapping")

    feeds_raw = converter.get('feeds') or []
    if not isinstance(feeds_raw, list):
        raise ConfigurationError("'converter.feeds' must be a list")

    feeds = [_feed_from_dict(entry, converter) for entry in feeds_raw]
    names = [feed.name for feed in feeds]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate feed name(s): {', '.join(duplicates)}")

    log_level = (raw.get('logging') or {}).get('level', 'INFO')

    return AppConfig(
        feeds=feeds,
        log_level=str(log_level),
        show_progress=bool(converter.get('show_progress', True))
    )


def load_app_config(config_path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load configuration from a YAML file with environment variable substitution.

    Falls back to the built-in defaults when the file does not exist.

    Raises:
        ConfigurationError: If the file is not valid YAML or has the wrong shape.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(
            "config_file_not_found",
            path=str(config_path),
            message="Using default configuration"
        )
        return build_app_config(default_config())

    config_str = substitute_env(config_path.read_text(encoding='utf-8'))

    try:
        raw = yaml.safe_load(config_str)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")

    return build_app_config(raw or {})

"""
Configuration loading for specflow projects.

A project's settings live in ``.specflow/config.json``. Missing files are
built from the default template, ``SPECFLOW_*`` environment variables are
layered on top, and the resulting directory layout is checked before the
configuration is handed out.
"""

import json
import logging
import os
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from core.errors import ConfigurationError
from core.models.config import GlobalSettings, ProjectConfig
from .defaults import ENV_VAR_MAPPING, LIST_ENV_VARS, get_default_project_config

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".specflow"
CONFIG_FILE_NAME = "config.json"


def default_project_name(name: str) -> str:
    return name.lower().replace(' ', '-')


class ConfigurationLoader:
    """
    Loads, caches and saves project configurations.

    Configurations are cached per resolved project path; ``clear_cache``
    forces the next load to read the file and environment again.
    """

    def __init__(self, global_settings: Optional[GlobalSettings] = None):
        self.global_settings = global_settings or GlobalSettings()
        self.config_cache: Dict[str, ProjectConfig] = {}

    def load_project_config(
        self,
        project_path: Union[str, Path],
        project_name: Optional[str] = None
    ) -> ProjectConfig:
        """
        Load the configuration of a project, or build one from defaults.

        Raises:
            ConfigurationError: If the path is not a directory, the file is
                not valid JSON, or the settings fail validation
        """
        project_path = Path(project_path).resolve()
        if not project_path.is_dir():
            raise ConfigurationError(f"Project path is not a directory: {project_path}")

        cached = self.config_cache.get(str(project_path))
        if cached is not None:
            return cached

        config_file = project_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if config_file.exists():
            data = self._read_config_file(config_file)
            source = str(config_file)
        else:
            data = self._substitute_template_vars(get_default_project_config(), {
                'project_name': default_project_name(project_name or project_path.name),
                'project_path': str(project_path),
            })
            source = "default configuration"

        data = self._apply_env_overrides(data)
        # The file's location wins over any path stored inside it
        data['path'] = project_path
        data.setdefault("name", default_project_name(project_name or project_path.name))

        try:
            config = ProjectConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration in {source}: {e}",
                details={"file": source, "errors": [err["msg"] for err in e.errors()]}
            ) from e

        self._check_layout(config)
        self.config_cache[str(project_path)] = config
        logger.debug(f"Loaded configuration for '{config.name}' from {source}")
        return config

    def _read_config_file(self, config_file: Path) -> Dict[str, Any]:
        try:
            data = json.loads(config_file.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON in {config_file}: {e}",
                details={"file": str(config_file)}
            ) from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration in {config_file} must be a JSON object",
                details={"file": str(config_file)}
            )
        return data

    @staticmethod
    def _check_layout(config: ProjectConfig) -> None:
        """
        Reject layouts the watcher and repository cannot tell apart.

        Backups hold copies of documents, so they may not live under the
        documents directory, and no two of the three directories may
        coincide.
        """
        directories = {
            "documents_dir": config.documents_dir.resolve(),
            "state_dir": config.state_dir.resolve(),
            "backups_dir": config.backups_dir.resolve(),
        }
        seen: Dict[Path, str] = {}
        for name, directory in directories.items():
            if directory in seen:
                raise ConfigurationError(
                    f"{name} and {seen[directory]} both point to {directory}",
                    details={"paths": {k: str(v) for k, v in directories.items()}}
                )
            seen[directory] = name

        backups, documents = directories["backups_dir"], directories["documents_dir"]
        if documents in backups.parents:
            raise ConfigurationError(
                f"backups_dir {backups} is inside documents_dir {documents}",
                details={"paths": {k: str(v) for k, v in directories.items()}}
            )

    def _substitute_template_vars(self, data: Any, substitutions: Dict[str, str]) -> Any:
        """Fill ``${var}`` placeholders anywhere in a nested structure"""
        if isinstance(data, dict):
            return {key: self._substitute_template_vars(value, substitutions) for key, value in data.items()}
        if isinstance(data, list):
            return [self._substitute_template_vars(item, substitutions) for item in data]
        if isinstance(data, str):
            return Template(data).safe_substitute(substitutions)
        return data

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Layer ``SPECFLOW_*`` variables over a configuration mapping"""
        applied = []
        for env_var, config_path in ENV_VAR_MAPPING.items():
            raw = os.getenv(env_var)
            if raw is None:
                continue

            *parents, leaf = config_path.split('.')
            section = config_data
            for key in parents:
                section = section.setdefault(key, {})
            section[leaf] = self._convert_env_value(raw, as_list=env_var in LIST_ENV_VARS)
            applied.append(env_var)

        if applied:
            logger.info(f"Applied environment overrides: {', '.join(applied)}")
        return config_data

    def _convert_env_value(self, value: str, as_list: bool = False) -> Any:
        """
        Convert an environment string to a config value.

        Booleans accept true/yes/on and false/no/off; numeric strings become
        ints or floats; list-valued variables are comma-separated.
        """
        if as_list:
            return [item.strip() for item in value.split(',') if item.strip()]

        lowered = value.lower()
        if lowered in ('true', 'yes', 'on'):
            return True
        if lowered in ('false', 'no', 'off'):
            return False

        try:
            return float(value) if '.' in value else int(value)
        except ValueError:
            return value

    def save_project_config(self, config: ProjectConfig) -> Path:
        """Write the configuration file, replacing any previous one atomically"""
        config_file = config.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = config_file.with_name(f".{config_file.name}.tmp")

        try:
            temp_file.write_text(json.dumps(config.to_dict(), indent=2, ensure_ascii=False), encoding='utf-8')
            os.replace(temp_file, config_file)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise ConfigurationError(f"Cannot write {config_file}: {e}") from e

        logger.info(f"Saved configuration to {config_file}")
        self.config_cache[str(config.path)] = config
        return config_file

    def setup_project(
        self,
        project_path: Union[str, Path],
        project_name: Optional[str] = None,
        overwrite: bool = False
    ) -> ProjectConfig:
        """
        Initialize a project: configuration file plus documents, state and
        backups directories. An initialized project is left untouched unless
        ``overwrite`` is set.
        """
        project_path = Path(project_path).resolve()
        if not project_path.exists():
            raise ConfigurationError(f"Project path does not exist: {project_path}")

        config = self.load_project_config(project_path, project_name)
        if config.is_initialized and not overwrite:
            logger.info(f"Project already initialized at {project_path}")
            return config

        for directory in (config.documents_dir, config.state_dir, config.backups_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.save_project_config(config)
        logger.info(f"Initialized project '{config.name}' at {project_path}")
        return config

    def clear_cache(self) -> None:
        self.config_cache.clear()
        logger.debug("Configuration cache cleared")

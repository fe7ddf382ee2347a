import os
from pathlib import Path
from string import Template
from typing import Optional

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from photojury.models.config import PhotoJuryConfig
from photojury.utils.exceptions import ConfigValidationError

logger = structlog.get_logger()


class ConfigManager:
    """Loads the YAML project configuration"""

    def __init__(self, config_path: str = "photojury.yaml"):
        self.config_path = Path(config_path)
        self.env_loaded = False
        self._config: Optional[PhotoJuryConfig] = None

    def load_config(self) -> PhotoJuryConfig:
        """Load and validate configuration"""
        if self._config:
            return self._config

        # 1. Load environment
        if not self.env_loaded:
            load_dotenv()
            self.env_loaded = True

        # 2. Check file existence
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        # 3. Read YAML
        try:
            with open(self.config_path, encoding="utf-8") as f:
                raw_content = f.read()
        except OSError as e:
            raise ConfigValidationError(f"Failed to read config file: {e}")

        # 4. Substitute env vars (${OLLAMA_MODEL} etc.)
        try:
            template = Template(raw_content)
            substituted_content = template.safe_substitute(os.environ)
            config_data = yaml.safe_load(substituted_content)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigValidationError(
                f"Failed to parse YAML or substitute variables: {e}"
            )

        if not isinstance(config_data, dict):
            raise ConfigValidationError(
                "Configuration file must contain a mapping at the top level"
            )

        # 5. Validate with Pydantic
        try:
            self._config = PhotoJuryConfig(**config_data)
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid configuration: {e}")

        logger.info(
            "config_loaded",
            path=str(self.config_path),
            title=self._config.evaluation.title,
            criteria=len(self._config.evaluation.criteria),
            model=self._config.inference.model,
        )
        return self._config

    def get_project_dir(self) -> Path:
        """Project directory, relative paths resolved against the config file"""
        config = self.load_config()
        project_dir = Path(config.project_dir)
        if not project_dir.is_absolute():
            project_dir = self.config_path.parent / project_dir
        return project_dir.resolve()

    def get_photo_dir(self) -> Path:
        """Photo directory, relative paths resolved against the project"""
        config = self.load_config()
        photo_dir = Path(config.photo_dir)
        if not photo_dir.is_absolute():
            photo_dir = self.get_project_dir() / photo_dir
        return photo_dir

"""
Configuration loader for the variation QA engine.
Loads config.yml and performs environment variable substitution.
"""

import os
import re
import yaml
from dotenv import load_dotenv
from pathlib import Path
from typing import Any, Dict


ITERATION_DEFAULTS = {
    "max_iterations": 5,
    "quick_max_iterations": 3,
    "visual_iteration_cap": 3,
    "settle_delay": 2.0,
    "reset_timeout": 3.0,
    "reload_timeout": 10.0,
    "reload_between_iterations": True,
    "key_prefix": "variation-qa-",
    "preview_prefix": "variation-qa-preview",
    "honor_judge_stop_hint": False
}


class ConfigLoader:
    """Loads and manages engine configuration."""

    def __init__(self, config_path: str = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config.yml. If None, uses the config.yml shipped
                with the package
        """
        if config_path is None:
            config_path = Path(__file__).parent / "config.yml"

        self.config_path = Path(config_path)

        # Load .env file next to the config if it exists
        env_file = self.config_path.parent / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=True)

        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            config = yaml.safe_load(f) or {}

        # Substitute environment variables
        config = self._substitute_env_vars(config)

        return config

    def _substitute_env_vars(self, obj: Any) -> Any:
        """
        Recursively substitute environment variables in config.
        Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.
        """
        if isinstance(obj, dict):
            return {k: self._substitute_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._substitute_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            return self._substitute_env_var_in_string(obj)
        else:
            return obj

    def _substitute_env_var_in_string(self, value: str) -> str:
        """
        Substitute environment variables in a string.

        Supports:
        - ${VAR_NAME} - Required variable
        - ${VAR_NAME:-default} - Variable with default value

        Args:
            value: String that may contain env var references

        Returns:
            String with variables substituted

        Raises:
            ValueError: If a required variable is not set
        """
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}'

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(3)

            env_value = os.getenv(var_name)

            if env_value is not None:
                return env_value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(
                    f"Environment variable ${{{var_name}}} not found and no default provided"
                )

        return re.sub(pattern, replace_match, value)

    def get_api_endpoint(self) -> str:
        """Get browser-control server URL."""
        return self.config.get('api_endpoint', 'http://localhost:8080')

    def get_model_config(self, model_tier: str) -> Dict[str, Any]:
        """
        Get model configuration for a specific role.

        Args:
            model_tier: One of 'judge_model', 'generator_model'

        Returns:
            Dictionary with provider, model_name, api_key and optional
            temperature/endpoint
        """
        if model_tier not in self.config:
            raise ValueError(f"Unknown model tier: {model_tier}")

        return self.config[model_tier]

    def get_judge_config(self) -> Dict[str, Any]:
        """Get judge model configuration."""
        return self.config.get('judge_model', {})

    def get_generator_config(self) -> Dict[str, Any]:
        """Get code generator model configuration."""
        return self.config.get('generator_model', {})

    def get_iteration_config(self) -> Dict[str, Any]:
        """Get iteration settings merged over defaults."""
        settings = dict(ITERATION_DEFAULTS)
        settings.update(self.config.get('iteration') or {})
        return settings

    def get_execution_config(self) -> Dict[str, Any]:
        """Get execution settings."""
        return self.config.get('execution', {})

    def get_reporting_config(self) -> Dict[str, Any]:
        """Get reporting settings."""
        return self.config.get('reporting', {})

    def get_timeout(self) -> int:
        """Get timeout for API requests in seconds."""
        return self.config.get('execution', {}).get('timeout', 300)

    def get_request_delay(self) -> float:
        """Get delay between variations in seconds."""
        return self.config.get('execution', {}).get('request_delay', 1)

    def get_reports_dir(self) -> Path:
        """Get reports directory path."""
        reports_dir = self.config.get('reporting', {}).get('reports_dir', 'reports')
        # Make path relative to config file location
        config_dir = self.config_path.parent
        return config_dir / reports_dir


# Singleton instance
_config_loader = None


def get_config() -> ConfigLoader:
    """
    Get global config loader instance.

    Returns:
        ConfigLoader instance
    """
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader

# backend/codemind/core/config_manager.py
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "CODEMIND_"


@dataclasses.dataclass
class PipelineSettings:
    """
    Tunables for the planning, repair and execution pipeline.

    Every field can be set from a JSON settings file or an environment
    variable named ``CODEMIND_<FIELD_NAME>`` (upper case).
    """
    provider: str = "openrouter"
    model: str = "deepseek/deepseek-chat"

    # Sampling temperatures per call site.
    analysis_temperature: float = 0.7
    planning_temperature: float = 0.3
    repair_temperature: float = 0.1
    recovery_temperature: float = 0.2
    recovery_max_tokens: int = 4000

    # Command execution and approval.
    command_timeout_ms: Optional[int] = 300_000
    approval_timeout_s: float = 120.0
    stop_on_failure: bool = True

    # Context truncation limits (characters / entries).
    mentioned_file_chars: int = 3000
    current_file_chars: int = 1000
    recovery_context_chars: int = 500
    max_project_files: int = 50
    max_recent_files: int = 5

    # A repair that shrinks the text below this ratio is treated as destructive.
    repair_min_retention: float = 0.5
    max_recovery_cycles: int = 2
    plan_format: Literal["block", "markdown"] = "block"

    def __post_init__(self):
        if self.plan_format not in ("block", "markdown"):
            raise ValueError(f"plan_format must be 'block' or 'markdown', got '{self.plan_format}'.")
        if not 0.0 <= self.repair_min_retention <= 1.0:
            raise ValueError("repair_min_retention must be between 0 and 1.")
        if self.max_recovery_cycles < 0:
            raise ValueError("max_recovery_cycles cannot be negative.")

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in dataclasses.fields(cls)]


def _coerce_setting(field: dataclasses.Field, raw: Any) -> Any:
    """Converts a string from the environment (or a JSON value) to the field's type."""
    default = field.default
    if raw is None:
        return None
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int) or field.name == "command_timeout_ms":
        if isinstance(raw, str) and raw.strip().lower() in ("", "none", "null"):
            return None
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return str(raw)


class ConfigManager:
    """
    Loads provider definitions and pipeline settings.

    1.  **Provider info**: ``providers.json`` (next to this module) maps a
        provider id to its display name, client class, API key name, client
        config and known models.
    2.  **Pipeline settings**: defaults from ``PipelineSettings``, overridden by
        an optional JSON settings file, overridden in turn by ``CODEMIND_*``
        environment variables.
    """
    def __init__(self, providers_path: Optional[str | Path] = None, settings_path: Optional[str | Path] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.providers_config_path = Path(providers_path) if providers_path else Path(__file__).resolve().parent / "providers.json"
        self.settings_path = Path(settings_path) if settings_path else None
        self._environ = os.environ if environ is None else environ
        self.providers_config: Dict[str, Any] = self._load_providers_config()
        self.settings: PipelineSettings = self.load_settings()

    def _load_providers_config(self) -> Dict[str, Any]:
        """Loads the providers.json configuration file."""
        if not self.providers_config_path.exists():
            logger.error(f"Provider config file not found at {self.providers_config_path}. No models will be available.")
            return {}
        try:
            with open(self.providers_config_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
            logger.info(f"Successfully loaded provider config from {self.providers_config_path}.")
            return config
        except (json.JSONDecodeError, OSError) as e:
            logger.exception(f"Failed to load or parse provider config file: {e}")
            return {}

    def _read_settings_file(self) -> Dict[str, Any]:
        if not self.settings_path:
            return {}
        if not self.settings_path.is_file():
            raise FileNotFoundError(f"Settings file not found: {self.settings_path}")
        with open(self.settings_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {self.settings_path} must contain a JSON object.")
        return data

    def load_settings(self) -> PipelineSettings:
        """
        Builds the effective settings.

        Raises:
            FileNotFoundError: If a settings path was given but does not exist.
            ValueError: If a setting has an invalid value.
        """
        fields = {f.name: f for f in dataclasses.fields(PipelineSettings)}
        values: Dict[str, Any] = {}

        for name, raw in self._read_settings_file().items():
            if name not in fields:
                logger.warning(f"Ignoring unknown setting '{name}' in {self.settings_path}.")
                continue
            values[name] = _coerce_setting(fields[name], raw)

        for name, field in fields.items():
            env_name = f"{ENV_PREFIX}{name.upper()}"
            if env_name in self._environ:
                try:
                    values[name] = _coerce_setting(field, self._environ[env_name])
                    logger.debug(f"Setting '{name}' overridden from environment.")
                except ValueError as e:
                    raise ValueError(f"Invalid value for {env_name}: {e}") from e

        settings = PipelineSettings(**values)
        logger.info(f"Pipeline settings loaded: provider='{settings.provider}', model='{settings.model}', plan_format='{settings.plan_format}'.")
        return settings

    def get_providers(self) -> Dict[str, str]:
        """Returns provider ids mapped to their display names."""
        return {pid: data.get("display_name", pid) for pid, data in self.providers_config.items()}

    def get_models_for_provider(self, provider_id: str) -> List[str]:
        data = self.providers_config.get(provider_id, {})
        prefix = data.get("client_config", {}).get("model_prefix", "")
        return [f"{prefix}{model}" for model in data.get("models", [])]

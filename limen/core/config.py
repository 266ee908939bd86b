# limen/core/config.py
from typing import Any, Dict
import os

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from limen.core.anomaly import AnomalyDetectionConfig
from limen.utils.logger import Logger

logger = Logger()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Loads configuration from environment variables (Priority 1) and 'config.yaml' (Priority 2).
    A .env next to the project root, or in the working directory, is loaded first.
    """
    def __init__(self, config_path: str = "config.yaml") -> None:
        current_dir = os.path.dirname(os.path.abspath(__file__))
        project_root = os.path.abspath(os.path.join(current_dir, '..', '..'))
        env_path = os.path.join(project_root, '.env')

        if os.path.exists(env_path):
            load_dotenv(dotenv_path=env_path)
        else:
            load_dotenv()

        self.config_path = config_path
        self.data = self._load_yaml()

    def _load_yaml(self) -> Dict[str, Any]:
        if not os.path.exists(self.config_path):
            return {}
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError):
            return {}
        return loaded if isinstance(loaded, dict) else {}

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.data.get(name) or {}
        return section if isinstance(section, dict) else {}

    # --- Monitoring ---
    @property
    def refresh_interval(self) -> float:
        return float(os.getenv("LIMEN_REFRESH_INTERVAL", self._section("monitoring").get("refresh_interval", 2.0)))

    @property
    def detection_enabled(self) -> bool:
        return _as_bool(os.getenv("LIMEN_DETECTION_ENABLED", self._section("monitoring").get("detection_enabled", True)))

    # --- External tools ---
    @property
    def lsof_path(self) -> str:
        return os.getenv("LIMEN_LSOF_PATH", self._section("tools").get("lsof", "lsof"))

    @property
    def netstat_path(self) -> str:
        return os.getenv("LIMEN_NETSTAT_PATH", self._section("tools").get("netstat", "netstat"))

    @property
    def command_timeout(self) -> float:
        return float(os.getenv("LIMEN_COMMAND_TIMEOUT", self._section("tools").get("timeout", 10.0)))

    # --- Logging ---
    @property
    def log_file(self) -> str:
        return os.getenv("LIMEN_LOG_FILE", self._section("logging").get("file", "limen_audit.log"))

    @property
    def log_level(self) -> str:
        return os.getenv("LIMEN_LOG_LEVEL", self._section("logging").get("level", "INFO"))

    # --- Local API ---
    @property
    def api_host(self) -> str:
        return os.getenv("LIMEN_API_HOST", self._section("server").get("host", "127.0.0.1"))

    @property
    def api_port(self) -> int:
        return int(os.getenv("LIMEN_API_PORT", self._section("server").get("port", 8765)))

    # --- Detection thresholds ---
    @property
    def anomaly_config(self) -> AnomalyDetectionConfig:
        """Thresholds from the `detection:` section. Invalid keys are logged and fall back to their defaults."""
        values = dict(self._section("detection"))
        while True:
            try:
                return AnomalyDetectionConfig(**values)
            except ValidationError as e:
                invalid = {err["loc"][0] for err in e.errors() if err["loc"] and err["loc"][0] in values}
                if not invalid:
                    logger.warning(f"Invalid detection config, using defaults: {e}")
                    return AnomalyDetectionConfig()
                logger.warning(f"Ignoring invalid detection thresholds {sorted(invalid)}: {e}")
                for key in invalid:
                    del values[key]

import json
import logging
from pathlib import Path
from typing import Dict, Any
import procwarden.settings as default_settings

log = logging.getLogger(__name__)


class GlobalSync:
    """
    A singleton class that houses all procwarden configuration.

    Every process loads defaults plus the persisted overrides file. The
    supervisor serves its copy through the control API; the console treats
    its own as a bootstrap view and asks the API for anything live.
    """

    def __init__(self) -> None:
        """Initializes the settings object by loading from the correct source."""
        self._config: Dict[str, Any] = {}
        self._load_defaults()
        self._load_overrides_from_file()

    def get(self, item: str, default: Any = None) -> Any:
        """Provides dictionary-like access to settings with a default value."""
        return self._config.get(item, default)

    def __getattr__(self, name: str) -> Any:
        """Allows attribute access to settings, raising an AttributeError if not found."""
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._config:
            return self._config[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def set(self, key: str, value: Any) -> None:
        """Updates a single setting in place."""
        self._config[key] = value

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from settings.py as the baseline."""
        for key in dir(default_settings):
            if key.isupper():
                self._config[key] = getattr(default_settings, key)

    def _load_overrides_from_file(self) -> None:
        """Loads whitelisted overrides from the JSON file."""
        overrides_path = Path(self._config["OVERRIDES_JSON_PATH"])
        if not overrides_path.exists():
            return

        try:
            with overrides_path.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file: {e}")
            return

        log.info(f"Loading runtime config overrides from {overrides_path}")
        for key, value in overrides.items():
            if key not in self._config["MODIFIABLE_SETTINGS"]:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue
            self._config[key] = value

    def get_all_settings(self) -> Dict[str, Any]:
        """Returns the entire configuration dictionary."""
        return self._config

# A singleton instance to be imported by other modules
app_globals = GlobalSync()

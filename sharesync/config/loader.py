"""YAML loader for the declared share configuration."""
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from sharesync.config.desired_state import DeclaredState
from sharesync.config.share_parser import ShareParser
from sharesync.models.config import ConfigValidationError


class ConfigLoader:
    """Loads sharesync.yml and builds the declared state."""

    def __init__(self, config_path: str = "sharesync.yml"):
        self.config_path = Path(config_path)
        self.raw_config: Optional[Dict[str, Any]] = None
        self.share_parser = ShareParser()

    def load(self) -> DeclaredState:
        """Read and validate the config file.

        Raises:
            FileNotFoundError: the file does not exist
            ConfigValidationError: the file is empty or malformed
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path) as f:
            try:
                self.raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigValidationError(f"Config file is not valid YAML: {e}") from e

        if not self.raw_config:
            raise ConfigValidationError("Config file is empty.")
        if not isinstance(self.raw_config, dict):
            raise ConfigValidationError("Config file must contain a mapping at the top level.")

        return self.build(self.raw_config)

    def build(self, config: Dict[str, Any]) -> DeclaredState:
        state = DeclaredState(
            service_enabled=self._service_enabled(config),
            source=str(self.config_path),
        )

        pools = config.get('pools') or {}
        if not isinstance(pools, dict):
            raise ConfigValidationError("'pools' must be a mapping of pool name to pool config")

        for pool_name, pool_config in pools.items():
            pool_config = pool_config or {}
            datasets = pool_config.get('datasets') or {}
            if not isinstance(datasets, dict):
                raise ConfigValidationError(f"'pools.{pool_name}.datasets' must be a mapping")

            state.pools[pool_name] = {}
            for name, dataset in datasets.items():
                dataset = dataset or {}
                dataset_path = f"{pool_name}/{name}"
                if name.startswith('/') or name.endswith('/') or '//' in name:
                    raise ConfigValidationError(f"Invalid dataset name '{dataset_path}'")
                shares = dataset.get('shares') or {}
                state.pools[pool_name][name] = self.share_parser.parse_nfs(
                    shares.get('nfs'), dataset_path
                )

        return state

    @staticmethod
    def _service_enabled(config: Dict[str, Any]) -> bool:
        service = (config.get('service') or {}).get('nfs') or {}
        enabled = service.get('enabled', True)
        if not isinstance(enabled, bool):
            raise ConfigValidationError("'service.nfs.enabled' must be true or false")
        return enabled

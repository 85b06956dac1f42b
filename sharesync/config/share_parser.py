"""NFS share configuration parsing and validation.

Accepts the shorthand forms allowed under ``shares.nfs``:

    nfs: true                        # one default export
    nfs: {clients: 10.0.0.0/24}      # one export, named "default" unless given
    nfs: [{name: lan, ...}, ...]     # several named exports
"""
import warnings
from typing import Any, Dict

from pydantic import ValidationError

from sharesync.models.config import ConfigValidationError
from sharesync.models.share import DEFAULT_EXPORT_NAME, ExportSpec


class ShareParser:
    """Turns raw ``shares.nfs`` values into validated ExportSpecs."""

    @staticmethod
    def parse_nfs(nfs_config: Any, dataset_path: str) -> Dict[str, ExportSpec]:
        """Return export name -> ExportSpec for one dataset.

        Raises:
            ConfigValidationError: unsupported format, invalid options or
                two exports sharing a name
        """
        if nfs_config is None or nfs_config is False:
            return {}
        if nfs_config is True:
            return {DEFAULT_EXPORT_NAME: ExportSpec()}

        if isinstance(nfs_config, dict):
            entries = [nfs_config]
        elif isinstance(nfs_config, (list, tuple)):
            entries = list(nfs_config)
        else:
            raise ConfigValidationError(
                f"Invalid NFS configuration in '{dataset_path}':\n"
                f"  Expected true, a mapping or a list of mappings, got {type(nfs_config).__name__}.\n"
                f"  \n"
                f"  Example:\n"
                f"    shares:\n"
                f"      nfs:\n"
                f"        - name: lan\n"
                f"          clients: 192.168.1.0/24\n"
                f"          options: rw,sync,no_subtree_check"
            )

        exports: Dict[str, ExportSpec] = {}
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ConfigValidationError(
                    f"Invalid NFS export #{index + 1} in '{dataset_path}': expected a mapping"
                )
            entry = dict(entry)
            if 'path' in entry:
                warnings.warn(
                    f"Deprecated NFS config in '{dataset_path}':\n"
                    f"  Remove 'path:' - the export path is the dataset mountpoint.",
                    DeprecationWarning,
                    stacklevel=3,
                )
                entry.pop('path')
            if len(entries) > 1 and 'name' not in entry:
                raise ConfigValidationError(
                    f"NFS export #{index + 1} in '{dataset_path}' needs a name "
                    f"when a dataset has more than one export"
                )
            try:
                spec = ExportSpec(**entry)
            except ValidationError as e:
                raise ConfigValidationError(
                    f"Invalid NFS export in '{dataset_path}':\n{e}"
                ) from e
            if spec.name in exports:
                raise ConfigValidationError(
                    f"Duplicate NFS export name '{spec.name}' in '{dataset_path}'"
                )
            exports[spec.name] = spec

        return exports

"""Load batch definitions from YAML or JSON files.

Example (``nightly.yaml``)::

    batchName: Nightly
    executionMode: parallel
    maxConcurrentRuns: 2
    project: ${AZDO_PROJECT}
    runs:
      - runName: Smoke
        planId: 1
        suiteIds: [2]
      - runName: Regression
        planId: 1
        suiteIds: [3, 4]
        dependsOn: [Smoke]

String values of the form ``${NAME}`` are replaced with the environment
variable ``NAME``.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from testrunmcp.domains.batch_execution import BatchSpec


class BatchFileError(ValueError):
    """The batch file cannot be read or does not describe a batch."""


def _expand_env(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        if env_var not in os.environ:
            raise BatchFileError(f"Environment variable {env_var} is not set")
        return os.environ[env_var]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def parse_batch_data(data: Any) -> BatchSpec:
    """Build a BatchSpec from already-decoded file content.

    A top-level ``batch`` key is unwrapped if present.
    """
    if isinstance(data, dict) and isinstance(data.get("batch"), dict):
        data = data["batch"]
    if not isinstance(data, dict):
        raise BatchFileError("Batch file must contain a mapping at the top level")
    try:
        return BatchSpec.from_dict(_expand_env(data))
    except TypeError as e:
        raise BatchFileError(str(e)) from e


def load_batch_file(path: Union[str, Path]) -> BatchSpec:
    """Read a ``.yaml``/``.yml`` or ``.json`` batch definition.

    Raises:
        BatchFileError: If the file is missing, malformed or not a batch
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise BatchFileError(f"Cannot read {file_path}: {e}") from e

    data: Dict[str, Any]
    try:
        if file_path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise BatchFileError(f"Cannot parse {file_path}: {e}") from e
    return parse_batch_data(data)

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from wbs_engine.core.errors import ProjectLoadError

logger = logging.getLogger(__name__)

# (key, container type, description) for the top-level sections.
SECTIONS: tuple[tuple[str, type, str], ...] = (
    ("project", dict, "a mapping"),
    ("nodes", list, "a list"),
    ("dependencies", list, "a list"),
)
KNOWN_KEYS = {"schema_version", "project", "nodes", "dependencies"}


def load_project(path: str) -> dict[str, Any]:
    """Load a YAML/JSON project document.

    Returns a dict with keys: schema_version, project, nodes, dependencies.
    Checks section container types only; the validator owns field checks.
    """

    p = Path(path)
    if not p.exists():
        raise ProjectLoadError(
            code="E_FILE_NOT_FOUND",
            message="file does not exist",
            file=str(p),
        )

    suffix = p.suffix.lower()
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise ProjectLoadError(code="E_FILE_READ", message=str(e), file=str(p)) from e

    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(raw_text)
        elif suffix == ".json":
            data = json.loads(raw_text)
        else:
            raise ProjectLoadError(
                code="E_UNSUPPORTED_FORMAT",
                message="supported formats are .yaml/.yml and .json",
                file=str(p),
            )
    except ProjectLoadError:
        raise
    except (yaml.YAMLError, ValueError) as e:
        code = "E_YAML_PARSE" if suffix in {".yaml", ".yml"} else "E_JSON_PARSE"
        raise ProjectLoadError(code=code, message=str(e), file=str(p)) from e

    if not isinstance(data, dict):
        raise ProjectLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be a mapping/object",
            file=str(p),
        )

    # Present sections must have the right container type; missing ones are
    # left for the validator to report field by field.
    for key, kind, label in SECTIONS:
        value = data.get(key)
        if value is not None and not isinstance(value, kind):
            raise ProjectLoadError(
                code="E_INVALID_SECTION",
                message=f"{key} must be {label}, got {type(value).__name__}",
                file=str(p),
                path=key,
            )

    unknown = sorted(str(k) for k in data if k not in KNOWN_KEYS)
    if unknown:
        logger.debug("%s: ignoring unknown top-level key(s): %s", p, ", ".join(unknown))

    return {
        "schema_version": data.get("schema_version"),
        "project": data.get("project"),
        "nodes": data.get("nodes"),
        "dependencies": data.get("dependencies") or [],
        "__file__": str(p),
    }

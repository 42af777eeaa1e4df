"""Load and validate pipeline YAML definitions."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from buildrunner._yaml import read_yaml_mapping
from buildrunner.errors import LoadErrorKind, PipelineLoadError
from buildrunner.pipeline.schema import PipelineSpec

# pydantic error types that mean "a key or value outside the recognised options"
_OPTION_ERROR_TYPES = frozenset({"extra_forbidden", "enum", "literal_error"})

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _classify(error: ValidationError) -> LoadErrorKind:
    """Structural problems win over unrecognised options when both are present."""
    types = {e["type"] for e in error.errors()}
    if types and types <= _OPTION_ERROR_TYPES:
        return LoadErrorKind.INVALID_OPTION
    return LoadErrorKind.MALFORMED_SPEC


def _format_errors(error: ValidationError) -> str:
    lines = []
    for e in error.errors():
        loc = ".".join(str(part) for part in e["loc"]) or "(root)"
        if e["type"] == "extra_forbidden":
            lines.append(f"  {loc}: unrecognized option")
        else:
            lines.append(f"  {loc}: {e['msg']}")
    return "\n".join(lines)


def parse_pipeline(
    data: dict[str, Any],
    name: str | None = None,
    *,
    source: str = "",
) -> PipelineSpec:
    """Validate an already-parsed mapping as a :class:`PipelineSpec`.

    A top-level ``name`` key takes precedence over *name*.
    """
    if not isinstance(data, dict):
        raise PipelineLoadError(f"Expected a mapping, got {type(data).__name__}")

    payload = dict(data)
    if "name" not in payload and name is not None:
        payload["name"] = name

    where = f" for {source}" if source else ""
    try:
        return PipelineSpec.model_validate(payload)
    except ValidationError as e:
        kind = _classify(e)
        raise PipelineLoadError(
            f"Validation failed{where} ({kind}):\n{_format_errors(e)}", kind
        ) from e


def name_from_stem(stem: str) -> str:
    """Turn a file stem into a valid pipeline name (``hoard build`` -> ``hoard-build``)."""
    name = _INVALID_NAME_CHARS.sub("-", stem).lstrip("._-")
    return name or "pipeline"


def load_pipeline(path: Path, name: str | None = None) -> PipelineSpec:
    """Read a YAML file and validate it as a :class:`PipelineSpec`.

    The pipeline identity defaults to *name*, then to the file stem with
    characters a name cannot hold replaced by ``-``.
    """
    data = read_yaml_mapping(path, PipelineLoadError)
    return parse_pipeline(data, name or name_from_stem(path.stem), source=str(path))

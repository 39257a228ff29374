"""
Formula loader — reads formula YAML files into validated Formula records.

One file per formula (``<name>.yml``), e.g.::

    name: mpris-discord-rpc
    version: "0.5.1"
    runtime_dependency: media-control
    artifacts:
      intel: {url: "https://…/mpris-discord-rpc-macos-amd64.tar.gz", checksum: ""}
      arm:   {url: "https://…/mpris-discord-rpc-macos-arm64.tar.gz", checksum: ""}
    install_targets:
      - {source: mpris-discord-rpc, destination: bin}
    service:
      command: ["{binary}"]
      keep_alive: true
      stdout_log_path: "{var}/log/mpris-discord-rpc.log"
      stderr_log_path: "{var}/log/mpris-discord-rpc.error.log"

The string ``{version}`` inside artifact URLs is expanded at load time.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kegworks.core.errors import FormulaValidationError
from kegworks.core.models.formula import Formula

logger = logging.getLogger(__name__)

FORMULA_SUFFIXES = (".yml", ".yaml")


def parse_formula(data: Any, source: str = "<memory>") -> Formula:
    """Validate one formula mapping.

    Raises:
        FormulaValidationError: If the mapping is not a valid formula.
    """
    if not isinstance(data, dict):
        raise FormulaValidationError(
            f"Expected a YAML mapping in {source}, got {type(data).__name__}"
        )

    name = data.get("name") if isinstance(data.get("name"), str) else None
    version = data.get("version", "")
    if not isinstance(version, str):
        # An unquoted 0.10 arrives as the float 0.1.
        raise FormulaValidationError(
            f"Invalid formula in {source}: version must be a string, "
            f"got {type(version).__name__} {version!r} (quote it in YAML)",
            formula=name,
        )

    artifacts = data.get("artifacts")
    if isinstance(artifacts, dict) and version:
        data = dict(data)
        data["artifacts"] = {
            arch: _expand_version(entry, version) for arch, entry in artifacts.items()
        }

    try:
        return Formula.model_validate(data)
    except ValidationError as e:
        raise FormulaValidationError(
            f"Invalid formula in {source}: {e}",
            formula=name,
        ) from e


def _expand_version(entry: Any, version: str) -> Any:
    if isinstance(entry, dict) and isinstance(entry.get("url"), str):
        entry = dict(entry)
        entry["url"] = entry["url"].replace("{version}", version)
    return entry


def load_formula_file(path: Path) -> Formula:
    """Load a single formula file."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FormulaValidationError(f"Cannot read {path}: {e}") from e
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise FormulaValidationError(f"Invalid YAML in {path}: {e}") from e

    formula = parse_formula(data, source=str(path))
    if path.stem != formula.name:
        logger.warning("Formula file %s declares name %r", path.name, formula.name)
    return formula


def load_formula_dirs(dirs: list[Path]) -> list[Formula]:
    """Load every formula file from the given directories (missing dirs are skipped)."""
    formulas: list[Formula] = []
    for directory in dirs:
        if not directory.is_dir():
            logger.debug("Formula directory %s does not exist — skipping", directory)
            continue
        for path in sorted(directory.iterdir()):
            if path.is_file() and path.suffix in FORMULA_SUFFIXES:
                formulas.append(load_formula_file(path))
    logger.info("Loaded %d formulas from %d directories", len(formulas), len(dirs))
    return formulas

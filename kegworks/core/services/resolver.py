"""
Artifact resolver — pick the download descriptor for an architecture.

Pure functions only: no I/O besides reading ``platform.machine()`` in
``detect_architecture`` when no machine string is passed in.
"""

from __future__ import annotations

import platform

from kegworks.core.errors import NoArtifactForArchitecture, UnsupportedArchitecture
from kegworks.core.models.formula import Architecture, ArtifactDescriptor, Formula

# uname machine → architecture tag
_MACHINE_MAP: dict[str, Architecture] = {
    "x86_64": Architecture.INTEL,
    "amd64": Architecture.INTEL,
    "i386": Architecture.INTEL,
    "i686": Architecture.INTEL,
    "arm64": Architecture.ARM,
    "aarch64": Architecture.ARM,
    "armv7l": Architecture.ARM,
    "armv8l": Architecture.ARM,
}


def coerce_architecture(value: Architecture | str, formula: str | None = None) -> Architecture:
    """Turn a tag into an Architecture or raise UnsupportedArchitecture."""
    if isinstance(value, Architecture):
        return value
    try:
        return Architecture(str(value).strip().lower())
    except ValueError:
        supported = ", ".join(a.value for a in Architecture)
        raise UnsupportedArchitecture(
            f"Unsupported architecture {value!r} (supported: {supported})",
            formula=formula,
        ) from None


def detect_architecture(machine: str | None = None) -> Architecture:
    """Map the running machine (or ``machine``) to an Architecture."""
    raw = (machine if machine is not None else platform.machine()).strip().lower()
    arch = _MACHINE_MAP.get(raw)
    if arch is None:
        raise UnsupportedArchitecture(f"Unsupported machine type {raw!r}")
    return arch


def resolve(formula: Formula, architecture: Architecture | str) -> ArtifactDescriptor:
    """Return the artifact the formula ships for ``architecture``.

    Raises:
        UnsupportedArchitecture: ``architecture`` is not intel or arm.
        NoArtifactForArchitecture: The formula has no entry for it.
    """
    arch = coerce_architecture(architecture, formula=formula.name)
    descriptor = formula.artifacts.get(arch)
    if descriptor is None:
        available = ", ".join(sorted(a.value for a in formula.artifacts)) or "none"
        raise NoArtifactForArchitecture(
            f"No artifact for {arch.value} (available: {available})",
            formula=formula.name,
        )
    return descriptor

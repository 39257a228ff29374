"""
Formula model — the declarative record describing one installable package.

A formula is metadata only: where to download the binary for each CPU
architecture, which files to place where, and (optionally) how to run the
installed binary as a background service.  Records are validated on load
and frozen afterwards; nothing mutates a formula during an operation.
"""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Hex digest length per supported algorithm.
_SUPPORTED_DIGESTS = {"sha256": 64, "sha1": 40, "md5": 32, "sha512": 128}
_HEX_RE = re.compile(r"^[0-9a-f]+$")
_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._+-]*$")


class Architecture(StrEnum):
    """CPU architectures a formula can ship artifacts for."""

    INTEL = "intel"
    ARM = "arm"


def expand_placeholders(text: str, values: dict[str, str]) -> str:
    """Replace ``{key}`` markers in ``text``; unknown markers are left alone."""
    for key, value in values.items():
        text = text.replace("{" + key + "}", value)
    return text


class ArtifactDescriptor(BaseModel):
    """Download location and expected digest for one architecture.

    ``checksum`` is either a bare sha256 hex digest or ``algo:hex``.
    An empty checksum means the artifact cannot be verified.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    checksum: str = ""

    @field_validator("url")
    @classmethod
    def _url_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("artifact url must not be empty")
        return v

    @field_validator("checksum")
    @classmethod
    def _checksum_format(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v:
            return ""
        algo, _, digest = v.partition(":") if ":" in v else ("sha256", "", v)
        if algo not in _SUPPORTED_DIGESTS:
            raise ValueError(f"unsupported checksum algorithm: {algo}")
        if not _HEX_RE.match(digest):
            raise ValueError("checksum digest must be hexadecimal")
        if len(digest) != _SUPPORTED_DIGESTS[algo]:
            raise ValueError(
                f"{algo} digest must be {_SUPPORTED_DIGESTS[algo]} hex characters, got {len(digest)}"
            )
        return f"{algo}:{digest}"

    @property
    def verifiable(self) -> bool:
        return bool(self.checksum)

    @property
    def algorithm(self) -> str:
        return self.checksum.split(":", 1)[0] if self.checksum else ""

    @property
    def digest(self) -> str:
        return self.checksum.split(":", 1)[1] if self.checksum else ""


class InstallTarget(BaseModel):
    """Copy ``source`` (a file name inside the archive) into ``destination``."""

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str = "bin"


class ServiceSpec(BaseModel):
    """How to run an installed binary as a supervised background process.

    ``command``, log paths and environment values may use the placeholders
    ``{binary}``, ``{prefix}``, ``{bin}`` and ``{var}``.
    """

    model_config = ConfigDict(frozen=True)

    command: list[str] = Field(default_factory=lambda: ["{binary}"])
    keep_alive: bool = False
    environment: dict[str, str] = Field(default_factory=dict)
    stdout_log_path: str | None = None
    stderr_log_path: str | None = None
    working_directory: str | None = None

    @field_validator("command")
    @classmethod
    def _command_present(cls, v: list[str]) -> list[str]:
        if not v or not v[0]:
            raise ValueError("service command must name an executable")
        return v

    def expand(self, values: dict[str, str]) -> ServiceSpec:
        """Return a copy with every placeholder substituted."""

        def _opt(text: str | None) -> str | None:
            return expand_placeholders(text, values) if text else text

        return self.model_copy(
            update={
                "command": [expand_placeholders(arg, values) for arg in self.command],
                "environment": {
                    key: expand_placeholders(val, values)
                    for key, val in self.environment.items()
                },
                "stdout_log_path": _opt(self.stdout_log_path),
                "stderr_log_path": _opt(self.stderr_log_path),
                "working_directory": _opt(self.working_directory),
            }
        )


class FormulaTest(BaseModel):
    """Smoke test: run the installed binary and look for ``expect`` in its output."""

    model_config = ConfigDict(frozen=True)

    args: list[str] = Field(default_factory=lambda: ["--version"])
    expect: str = "{version}"
    timeout: float = 30.0


class Formula(BaseModel):
    """One installable package."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    desc: str = ""
    homepage: str = ""
    license: str = ""

    runtime_dependency: str | None = None
    artifacts: dict[Architecture, ArtifactDescriptor] = Field(default_factory=dict)
    install_targets: list[InstallTarget] = Field(default_factory=list)
    service: ServiceSpec | None = None
    test: FormulaTest | None = None

    @field_validator("name")
    @classmethod
    def _name_format(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(f"invalid formula name: {v!r}")
        return v

    @field_validator("version")
    @classmethod
    def _version_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("version must not be empty")
        return v

    @model_validator(mode="after")
    def _check_targets(self) -> Formula:
        if not self.install_targets:
            raise ValueError(f"formula {self.name!r} declares no install targets")
        if self.runtime_dependency == self.name:
            raise ValueError(f"formula {self.name!r} depends on itself")
        return self

    @property
    def has_service(self) -> bool:
        return self.service is not None

    @property
    def primary_binary(self) -> str:
        """Name of the first installed file (the one a service runs by default)."""
        return self.install_targets[0].source.rsplit("/", 1)[-1]

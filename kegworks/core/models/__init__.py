"""
Domain models — Pydantic types for formulas and installed state.

All models are re-exported here for convenient access:

    from kegworks.core.models import Formula, InstalledRecord, ServiceState
"""

from kegworks.core.models.formula import (
    Architecture,
    ArtifactDescriptor,
    Formula,
    FormulaTest,
    InstallTarget,
    ServiceSpec,
    expand_placeholders,
)
from kegworks.core.models.state import (
    InstalledRecord,
    ServiceRegistration,
    ServiceState,
)

__all__ = [
    # formula.py
    "Architecture",
    "ArtifactDescriptor",
    "Formula",
    "FormulaTest",
    "InstallTarget",
    # state.py
    "InstalledRecord",
    "ServiceRegistration",
    "ServiceSpec",
    "ServiceState",
    "expand_placeholders",
]

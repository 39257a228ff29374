"""
Formula registry — validated formulas keyed by name.

Populated once at startup.  The dependency graph is flat: a formula
names at most one runtime dependency, and that dependency may not have
one of its own.  Validation rejects anything else up front instead of
running a general resolver later.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from kegworks.core.errors import FormulaValidationError, NotFound
from kegworks.core.models.formula import Formula

logger = logging.getLogger(__name__)


class FormulaRegistry:
    """Read-mostly lookup table of formulas."""

    def __init__(self, formulas: Iterable[Formula] = ()):
        self._formulas: dict[str, Formula] = {}
        for formula in formulas:
            if formula.name in self._formulas:
                raise FormulaValidationError(
                    "Duplicate formula definition", formula=formula.name,
                )
            self._formulas[formula.name] = formula
        self.validate()
        logger.debug("Registry holds %d formulas", len(self._formulas))

    def validate(self) -> None:
        """Check every runtime dependency.

        Raises:
            FormulaValidationError: self-dependency, unknown dependency,
                or a dependency that itself has a dependency.
        """
        for formula in self._formulas.values():
            dep = formula.runtime_dependency
            if dep is None:
                continue
            if dep == formula.name:
                raise FormulaValidationError("Formula depends on itself", formula=formula.name)
            target = self._formulas.get(dep)
            if target is None:
                raise FormulaValidationError(
                    f"Unknown runtime dependency {dep!r}", formula=formula.name,
                )
            if target.runtime_dependency is not None:
                raise FormulaValidationError(
                    f"Runtime dependency {dep!r} has its own dependency "
                    f"{target.runtime_dependency!r}; chains deeper than one level are not supported",
                    formula=formula.name,
                )

    def lookup(self, name: str) -> Formula:
        try:
            return self._formulas[name]
        except KeyError:
            raise NotFound("No such formula", formula=name) from None

    def list(self) -> list[str]:
        """Formula names in sorted order."""
        return sorted(self._formulas)

    def dependents(self, name: str) -> list[str]:
        """Names of formulas whose runtime dependency is ``name``."""
        return sorted(
            f.name for f in self._formulas.values() if f.runtime_dependency == name
        )

    def __contains__(self, name: object) -> bool:
        return name in self._formulas

    def __len__(self) -> int:
        return len(self._formulas)

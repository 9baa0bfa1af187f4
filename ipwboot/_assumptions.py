from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Assumption:
    """
    An identification assumption behind the IPW estimate.

    ``testable`` says whether the data can speak to it (positivity can be
    inspected through the fitted propensity scores) or whether it must be
    argued on substantive grounds (no unobserved confounding).
    """

    name: str
    testable: bool

    def fmt_tag(self) -> str:
        """Fixed-width bracketed label used in summaries."""
        return "[  testable  ]" if self.testable else "[ untestable ]"


IPW_ASSUMPTIONS: list[Assumption] = [
    Assumption("Conditional exchangeability: no unobserved confounders given the covariates", testable=False),
    Assumption("Positivity: every unit has a non-zero probability of each treatment level", testable=True),
    Assumption("Correct specification of the propensity score model", testable=False),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)", testable=False),
]

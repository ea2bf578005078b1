"""Exception hierarchy for the RaceGuard analyzer.

None of these abort a run: the analyzer catches them per method or per
call-graph component and records an "analysis incomplete" note instead.
"""

from typing import Optional, Sequence


class AnalysisError(Exception):
    """Base class for all analyzer errors"""

    def __init__(self, message: str, method_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.method_id = method_id

    def __str__(self) -> str:
        if self.method_id:
            return f"{self.method_id}: {self.message}"
        return self.message


class UnresolvableAccessPath(AnalysisError):
    """An access whose target cannot be mapped to a declared field"""

    def __init__(self, expression: str, reason: str, method_id: Optional[str] = None):
        super().__init__(f"cannot resolve '{expression}' ({reason})", method_id)
        self.expression = expression
        self.reason = reason


class MalformedCFG(AnalysisError):
    """Dangling call target, missing block or otherwise broken method CFG"""


class BudgetExceeded(AnalysisError):
    """Per-method analysis budget ran out"""

    def __init__(self, method_id: str, budget: int):
        super().__init__(f"analysis budget of {budget} steps exceeded", method_id)
        self.budget = budget


class NonConvergentFixpoint(AnalysisError):
    """Summary fixpoint over a call-graph cycle hit the iteration cap"""

    def __init__(self, members: Sequence[str], iterations: int):
        names = ", ".join(members)
        super().__init__(
            f"summary fixpoint did not converge after {iterations} iterations "
            f"for component [{names}]"
        )
        self.members = tuple(members)
        self.iterations = iterations


class InputFormatError(AnalysisError, ValueError):
    """Input document is not a usable set of method records"""

"""Variable store, regex extraction and substitution engine."""

from .engine import SubstitutionContext, VariableEngine
from .models import PairValue, Variable, text_of, value_of
from .store import VariableStore

__all__ = [
    "PairValue",
    "SubstitutionContext",
    "Variable",
    "VariableEngine",
    "VariableStore",
    "text_of",
    "value_of",
]

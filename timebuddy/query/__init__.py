"""Query building, execution and result normalization."""

from .builder import QueryOptions, QueryRequestBuilder
from .data_access import DataAccess

__all__ = ["DataAccess", "QueryOptions", "QueryRequestBuilder"]

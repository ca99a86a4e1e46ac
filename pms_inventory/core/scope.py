"""
Property scoping for multi-property queries
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ScopeFilter:
    """
    Restricts queries to a single property.

    ``property_id=None`` means all properties; callers pass the scope
    explicitly instead of it being read from request state.
    """
    property_id: Optional[int] = None

    @property
    def is_global(self) -> bool:
        return self.property_id is None

    def apply(self, query, column):
        """Filter ``query`` on ``column`` when a property is selected"""
        if self.property_id is None:
            return query
        return query.filter(column == self.property_id)


ALL_PROPERTIES = ScopeFilter()

"""
Abstract base classes and protocols for the database engine.
"""

from mvkv.interfaces.range_iterable import RangeIterable
from mvkv.interfaces.sorted_container import SortedContainer

__all__ = ["RangeIterable", "SortedContainer"]

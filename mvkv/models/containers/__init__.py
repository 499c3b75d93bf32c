"""
Sorted container implementations for the database engine.
"""

from mvkv.models.containers.sorted_dict import SortedDictContainer

__all__ = ["SortedDictContainer"]

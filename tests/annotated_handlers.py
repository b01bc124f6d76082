"""
Method handlers written with postponed evaluation of annotations, where
every annotation reaches the call-plan derivation as a string.
"""

from __future__ import annotations

from busvalues import \
    Variant

def add(a : int, b : int) -> int :
    return \
        a + b
#end add

def lookup(names : list[str], table : dict[str, Variant]) -> tuple[int, str] :
    return \
        (len(names), ",".join(table))
#end lookup

def pair() -> "(is)" :
    return \
        (1, "one")
#end pair

"""Accent- and case-insensitive stop search."""

from __future__ import annotations

import unicodedata
from typing import Iterable, List

from transit_models import Stop


def normalize_for_search(text: str) -> str:
    """Strip diacritics and lowercase, so "Trindade" matches "trindáde"."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def stop_matches_query(stop: Stop, query: str) -> bool:
    q = query.strip()
    if not q:
        return False
    needle = normalize_for_search(q)
    return needle in normalize_for_search(stop.name) or needle in normalize_for_search(stop.id)


def filter_stops_by_query(stops: Iterable[Stop], query: str) -> List[Stop]:
    if not query.strip():
        return []
    return [stop for stop in stops if stop_matches_query(stop, query)]


__all__ = ["normalize_for_search", "stop_matches_query", "filter_stops_by_query"]

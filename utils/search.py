# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Fuzzy matching of filter names using RapidFuzz.

Thresholds:
- autocomplete: 50%+ (names are short, be generous)
- "did you mean": 70%+ on the best match
"""

from rapidfuzz import fuzz, process
from rapidfuzz.utils import default_process

from core.filters import AudioFilter

AUTOCOMPLETE_THRESHOLD = 50
SUGGEST_THRESHOLD = 70


def _filter_choices() -> dict[str, str]:
    """name -> "name: description" search string."""
    return {f.value: f"{f.value} {f.description}" for f in AudioFilter}


def autocomplete_filters(query: str, max_results: int = 25) -> list[AudioFilter]:
    """Filters matching a partial name, best first. Empty query lists all."""
    if not query or not default_process(query):
        return list(AudioFilter)[:max_results]

    # WRatio on name + description, so "boost" finds bass and treble
    results = process.extract(
        query[:100],
        _filter_choices(),
        scorer=fuzz.WRatio,
        processor=default_process,
        limit=max_results,
    )
    # extract() on a dict yields (choice, score, key)
    return [AudioFilter(key) for _, score, key in results if score >= AUTOCOMPLETE_THRESHOLD]


def suggest_filter(name: str) -> AudioFilter | None:
    """Closest filter to a mistyped name, or None if nothing is close."""
    if not name or not default_process(name):
        return None
    match = process.extractOne(
        name[:100],
        [f.value for f in AudioFilter],
        scorer=fuzz.ratio,
        processor=default_process,
    )
    if match is None or match[1] < SUGGEST_THRESHOLD:
        return None
    return AudioFilter(match[0])

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

"""Audio filter catalogue and ffmpeg filter chain builder."""

from enum import Enum
from typing import Iterable


class AudioFilter(Enum):
    """Closed set of filters users can stack on a track.

    Each member maps to an ffmpeg ``-af`` fragment and a short description
    shown by /filters. Member values are the names users type.
    """

    BASS = "bass"
    NIGHTCORE = "nightcore"
    VAPORWAVE = "vaporwave"
    EIGHT_D = "8d"
    TREBLE = "treble"
    ECHO = "echo"
    KARAOKE = "karaoke"
    SPEED = "speed"
    SLOW = "slow"

    @property
    def fragment(self) -> str:
        return _FILTER_TABLE[self][0]

    @property
    def description(self) -> str:
        return _FILTER_TABLE[self][1]

    @classmethod
    def from_name(cls, name: str) -> "AudioFilter | None":
        """Look up a filter by user-typed name. Returns None if unknown."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


_FILTER_TABLE: dict[AudioFilter, tuple[str, str]] = {
    AudioFilter.BASS: ("bass=g=10:f=110:w=0.6", "boosts low frequencies"),
    AudioFilter.NIGHTCORE: ("asetrate=48000*1.25,aresample=48000,atempo=1.06", "faster and higher pitched"),
    AudioFilter.VAPORWAVE: ("asetrate=48000*0.8,aresample=48000,atempo=1.1", "slowed and pitched down"),
    AudioFilter.EIGHT_D: ("apulsator=hz=0.08", "audio circles around your head"),
    AudioFilter.TREBLE: ("treble=g=5", "boosts high frequencies"),
    AudioFilter.ECHO: ("aecho=0.8:0.9:1000:0.3", "adds an echo"),
    AudioFilter.KARAOKE: ("stereotools=mlev=0.03", "removes centered vocals"),
    AudioFilter.SPEED: ("atempo=1.5", "plays 1.5x faster"),
    AudioFilter.SLOW: ("atempo=0.75", "plays 0.75x slower"),
}


def build_filter_chain(filters: Iterable[AudioFilter]) -> str:
    """Join filter fragments into a single ffmpeg -af argument.

    Order follows the input, duplicates are dropped. Returns an empty
    string for an empty input.

    Example:
        build_filter_chain([AudioFilter.BASS, AudioFilter.ECHO])
        -> "bass=g=10:f=110:w=0.6,aecho=0.8:0.9:1000:0.3"
    """
    seen: list[AudioFilter] = []
    for audio_filter in filters:
        if audio_filter not in seen:
            seen.append(audio_filter)
    return ",".join(f.fragment for f in seen)


def filter_names(filters: Iterable[AudioFilter]) -> str:
    """Comma-separated user-facing names, for logs and messages."""
    return ", ".join(f.value for f in filters) or "none"

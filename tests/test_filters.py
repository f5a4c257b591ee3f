"""Tests for the filter catalogue and fuzzy filter lookup."""

from __future__ import annotations

import pytest

from core.filters import AudioFilter, build_filter_chain, filter_names
from utils.search import autocomplete_filters, suggest_filter


class TestAudioFilter:
    def test_every_filter_has_fragment_and_description(self) -> None:
        for audio_filter in AudioFilter:
            assert audio_filter.fragment
            assert audio_filter.description

    @pytest.mark.parametrize("name,expected", [
        ("bass", AudioFilter.BASS),
        ("  Nightcore ", AudioFilter.NIGHTCORE),
        ("8D", AudioFilter.EIGHT_D),
    ])
    def test_from_name(self, name: str, expected: AudioFilter) -> None:
        assert AudioFilter.from_name(name) is expected

    def test_from_name_unknown(self) -> None:
        assert AudioFilter.from_name("dubstep") is None


class TestBuildFilterChain:
    def test_empty(self) -> None:
        assert build_filter_chain([]) == ""

    def test_order_is_kept(self) -> None:
        chain = build_filter_chain([AudioFilter.ECHO, AudioFilter.BASS])
        assert chain == f"{AudioFilter.ECHO.fragment},{AudioFilter.BASS.fragment}"

    def test_duplicates_dropped(self) -> None:
        chain = build_filter_chain([AudioFilter.BASS, AudioFilter.BASS])
        assert chain == AudioFilter.BASS.fragment

    def test_filter_names(self) -> None:
        assert filter_names([AudioFilter.BASS, AudioFilter.EIGHT_D]) == "bass, 8d"
        assert filter_names([]) == "none"


class TestFuzzyLookup:
    def test_empty_query_lists_everything(self) -> None:
        assert autocomplete_filters("") == list(AudioFilter)

    def test_partial_name_ranks_match_first(self) -> None:
        assert autocomplete_filters("night")[0] is AudioFilter.NIGHTCORE

    def test_max_results(self) -> None:
        assert len(autocomplete_filters("", max_results=3)) == 3

    @pytest.mark.parametrize("typo,expected", [
        ("bas", AudioFilter.BASS),
        ("nightcor", AudioFilter.NIGHTCORE),
        ("vaporwav", AudioFilter.VAPORWAVE),
    ])
    def test_suggest(self, typo: str, expected: AudioFilter) -> None:
        assert suggest_filter(typo) is expected

    def test_suggest_nothing_close(self) -> None:
        assert suggest_filter("zzzzzzzz") is None
        assert suggest_filter("") is None

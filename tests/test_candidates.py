from __future__ import annotations

import pytest

from engine.errors import InvalidSourceError
from input.candidates import build_candidates, candidates_for, resolve_source


def test_token_url_is_first_candidate() -> None:
    candidates = build_candidates("https://host/video/12345?h=abcdef")
    assert candidates[0] == "https://player.vimeo.com/video/12345?h=abcdef"


def test_tokenized_source_yields_four_candidates_in_priority_order() -> None:
    source = "https://host/video/12345?h=abcdef"
    assert build_candidates(source) == (
        "https://player.vimeo.com/video/12345?h=abcdef",
        source,
        "https://vimeo.com/12345",
        "https://player.vimeo.com/video/12345",
    )


def test_unlisted_path_token_is_detected() -> None:
    ref = resolve_source("https://vimeo.com/76979871/8272103f6e")
    assert ref.video_id == "76979871"
    assert ref.token == "8272103f6e"


def test_player_embed_wins_over_trailing_numeric_segment() -> None:
    ref = resolve_source("https://player.vimeo.com/video/111/222")
    assert ref.video_id == "111"


def test_channel_url_uses_last_numeric_segment() -> None:
    ref = resolve_source("https://vimeo.com/channels/staffpicks/987654")
    assert ref.video_id == "987654"
    assert ref.token is None
    assert build_candidates("https://vimeo.com/channels/staffpicks/987654")[0] == (
        "https://vimeo.com/channels/staffpicks/987654"
    )


def test_bare_numeric_id_skips_original_url_candidate() -> None:
    assert build_candidates("12345") == (
        "https://vimeo.com/12345",
        "https://player.vimeo.com/video/12345",
    )


def test_duplicate_candidates_are_collapsed() -> None:
    candidates = build_candidates("https://vimeo.com/12345")
    assert candidates == ("https://vimeo.com/12345", "https://player.vimeo.com/video/12345")
    assert len(set(candidates)) == len(candidates)


def test_caller_video_id_overrides_derived_identifier() -> None:
    ref = resolve_source("https://host/video/12345?h=abcdef", video_id="999")
    assert ref.video_id == "999"
    assert ref.token == "abcdef"
    assert candidates_for(ref)[0] == "https://player.vimeo.com/video/999?h=abcdef"


def test_caller_video_id_rescues_unparseable_url() -> None:
    ref = resolve_source("https://example.com/some/page", video_id="abc_123")
    assert ref.video_id == "abc_123"


@pytest.mark.parametrize(
    "source",
    ["", "   ", None, "https://example.com/about", "not a url"],
)
def test_missing_identifier_raises_invalid_source(source) -> None:
    with pytest.raises(InvalidSourceError):
        resolve_source(source)


def test_malformed_caller_video_id_is_rejected() -> None:
    with pytest.raises(InvalidSourceError):
        resolve_source("https://vimeo.com/12345", video_id="../etc")


def test_non_alphanumeric_query_token_is_ignored() -> None:
    ref = resolve_source("https://host/video/12345?h=ab%20cd")
    assert ref.token is None

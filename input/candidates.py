"""Candidate URL construction for raw source input."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import ParseResult, parse_qs, urlparse

from engine.errors import InvalidSourceError

TOKEN_URL_TEMPLATE = "https://player.vimeo.com/video/{video_id}?h={token}"
PAGE_URL_TEMPLATE = "https://vimeo.com/{video_id}"
PLAYER_URL_TEMPLATE = "https://player.vimeo.com/video/{video_id}"

_NUMERIC_ID_RE = re.compile(r"^\d+$")
_PATH_TOKEN_RE = re.compile(r"^[0-9a-f]{6,}$")
_QUERY_TOKEN_RE = re.compile(r"^[0-9A-Za-z]+$")
_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class SourceRef:
    video_id: str
    token: Optional[str]
    source_url: str


Match = Optional[tuple[str, Optional[str]]]


def _path_parts(parsed: ParseResult) -> list[str]:
    return [segment for segment in (parsed.path or "").split("/") if segment]


def _query_token(parsed: ParseResult) -> Optional[str]:
    values = parse_qs(parsed.query).get("h")
    if not values:
        return None
    token = values[0].strip()
    return token if _QUERY_TOKEN_RE.match(token) else None


def _match_player_embed(raw: str, parsed: ParseResult) -> Match:
    # /video/<id>?h=<token>
    parts = _path_parts(parsed)
    for index, segment in enumerate(parts[:-1]):
        if segment.lower() == "video" and _NUMERIC_ID_RE.match(parts[index + 1]):
            return parts[index + 1], _query_token(parsed)
    return None


def _match_unlisted_path(raw: str, parsed: ParseResult) -> Match:
    # /<id>/<token>
    parts = _path_parts(parsed)
    if len(parts) == 2 and _NUMERIC_ID_RE.match(parts[0]) and _PATH_TOKEN_RE.match(parts[1]):
        return parts[0], parts[1]
    return None


def _match_numeric_segment(raw: str, parsed: ParseResult) -> Match:
    # /<id>, /channels/<name>/<id>, /groups/<name>/videos/<id>
    for segment in reversed(_path_parts(parsed)):
        if _NUMERIC_ID_RE.match(segment):
            return segment, _query_token(parsed)
    return None


def _match_bare_id(raw: str, parsed: ParseResult) -> Match:
    if not parsed.scheme and _NUMERIC_ID_RE.match(raw):
        return raw, None
    return None


# Evaluated in order; the first matcher returning a value wins.
_MATCHERS: list[Callable[[str, ParseResult], Match]] = [
    _match_player_embed,
    _match_unlisted_path,
    _match_numeric_segment,
    _match_bare_id,
]


def _is_http_url(parsed: ParseResult) -> bool:
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def resolve_source(source_url: str | None, video_id: str | None = None) -> SourceRef:
    """Derive the video identifier and optional access token from ``source_url``.

    A caller-supplied ``video_id`` replaces the derived identifier; the token is
    still read from the URL. Raises ``InvalidSourceError`` when no identifier can
    be derived.
    """
    raw = (source_url or "").strip()
    parsed = urlparse(raw)

    derived_id = None
    token = None
    for matcher in _MATCHERS:
        matched = matcher(raw, parsed)
        if matched:
            derived_id, token = matched
            break

    override = (video_id or "").strip()
    if override:
        if not _VIDEO_ID_RE.match(override):
            raise InvalidSourceError(f"invalid video id: {override!r}")
        derived_id = override

    if not derived_id:
        raise InvalidSourceError(f"no video identifier found in {raw!r}")
    return SourceRef(video_id=derived_id, token=token, source_url=raw)


def candidates_for(ref: SourceRef) -> tuple[str, ...]:
    """Return candidate URLs for ``ref``, most specific first, without duplicates."""
    ordered = []
    if ref.token:
        ordered.append(TOKEN_URL_TEMPLATE.format(video_id=ref.video_id, token=ref.token))
    if _is_http_url(urlparse(ref.source_url)):
        ordered.append(ref.source_url)
    ordered.append(PAGE_URL_TEMPLATE.format(video_id=ref.video_id))
    ordered.append(PLAYER_URL_TEMPLATE.format(video_id=ref.video_id))

    seen = set()
    unique = []
    for url in ordered:
        if url in seen:
            continue
        seen.add(url)
        unique.append(url)
    return tuple(unique)


def build_candidates(source_url: str | None, video_id: str | None = None) -> tuple[str, ...]:
    return candidates_for(resolve_source(source_url, video_id))

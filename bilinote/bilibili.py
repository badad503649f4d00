"""
Bilibili upstream client.

Wraps the four upstream endpoints the extraction pipeline talks to:

    1. Video info (``x/web-interface/view``): title, description, cid
    2. Player v2 (``x/player/v2``): subtitle list plus the optional AI track
    3. Legacy player (``x/player.so``): XML envelope with an embedded JSON
       subtitle list, only consulted when the v2 list has no usable track
    4. Subtitle content: the track's own JSON file with a ``body[]`` array

The upstream is not under our control and is known to be inconsistent
between calls, so nothing here caches or retries. Each ``BilibiliClient``
owns one ``httpx.AsyncClient`` and is meant to live for a single extraction
request.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from bilinote.config import Settings
from bilinote.errors import (
    EmptySubtitle,
    InvalidUrl,
    MalformedSubtitleData,
    MissingContentId,
    NetworkError,
    UpstreamRejected,
)
from bilinote.utils import extract_bvid, is_bvid, normalize_subtitle_url, preview

logger = logging.getLogger(__name__)

BILIBILI_REFERER = "https://www.bilibili.com"
VIDEO_INFO_URL = "https://api.bilibili.com/x/web-interface/view"
PLAYER_V2_URL = "https://api.bilibili.com/x/player/v2"
PLAYER_SO_URL = "https://api.bilibili.com/x/player.so"
SHORT_LINK_URL = "https://b23.tv/{code}"

AI_LANGUAGE_CODE = "ai-zh"

# player.so wraps the subtitle JSON in an XML-ish envelope
SUBTITLE_TAG_PATTERN = re.compile(r"<subtitle>([\s\S]*?)</subtitle>")


class SourceApi(str, Enum):
    """Which upstream endpoint listed a track."""

    primary = "primary"
    secondary = "secondary"


@dataclass(frozen=True)
class VideoMetadata:
    """
    Video metadata from the video-info endpoint.

    Attributes:
        bvid: Canonical BV code
        title: Video title
        description: Video description ("" when absent)
        cid: Content id of the first part, required by the subtitle endpoints
    """

    bvid: str
    title: str
    description: str
    cid: int

    @classmethod
    def from_api(cls, bvid: str, data: dict[str, Any]) -> "VideoMetadata":
        """Create VideoMetadata from the ``data`` object of a view response."""
        cid = data.get("cid")
        if not cid:
            raise MissingContentId(f"Video {bvid} has no cid; subtitles cannot be queried")
        return cls(
            bvid=bvid,
            title=data.get("title") or "",
            description=data.get("desc") or "",
            cid=int(cid),
        )


@dataclass(frozen=True)
class SubtitleTrack:
    """
    One selectable subtitle track.

    Attributes:
        language_code: Upstream ``lan`` (e.g. zh-CN, ai-zh, en-US)
        language_label: Upstream ``lan_doc`` (e.g. 中文（自动生成）)
        download_url: Subtitle JSON URL, possibly protocol-relative or empty
        source_api: Endpoint that listed the track
        is_ai_generated: Marked as AI by code, label or an ``ai_status`` field
        track_id: Upstream id, kept for logging
    """

    language_code: str
    language_label: str
    download_url: str
    source_api: SourceApi = SourceApi.primary
    is_ai_generated: bool = False
    track_id: str | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any], source_api: SourceApi) -> "SubtitleTrack":
        """Create a SubtitleTrack from an entry of an upstream ``subtitles`` list."""
        code = item.get("lan") or ""
        label = item.get("lan_doc") or ""
        track_id = item.get("id_str") or item.get("id")
        return cls(
            language_code=code,
            language_label=label,
            download_url=item.get("subtitle_url") or "",
            source_api=source_api,
            is_ai_generated=(
                code == AI_LANGUAGE_CODE or "AI" in label or "ai_status" in item
            ),
            track_id=str(track_id) if track_id is not None else None,
        )

    @property
    def has_download_url(self) -> bool:
        return bool(self.download_url.strip())


@dataclass(frozen=True)
class SubtitleSegment:
    """A single timed line of a downloaded subtitle."""

    start: float
    end: float
    content: str


def merge_tracks(
    primary: list[SubtitleTrack], secondary: list[SubtitleTrack]
) -> list[SubtitleTrack]:
    """
    Merge two track lists into one catalog, deduplicated by download URL.

    Primary tracks come first and win on a URL collision; catalog order is
    otherwise preserved. Tracks with a blank URL are never treated as
    duplicates of each other, so an unusable track stays visible to the
    selector rather than silently vanishing.

    Args:
        primary: Tracks from the player v2 endpoint
        secondary: Tracks from the legacy player.so endpoint

    Returns:
        Merged catalog (may be empty)
    """
    catalog: list[SubtitleTrack] = []
    seen_urls: set[str] = set()

    for track in [*primary, *secondary]:
        key = track.download_url.strip()
        if key:
            if key in seen_urls:
                continue
            seen_urls.add(key)
        catalog.append(track)

    return catalog


def _seconds(value: Any) -> float:
    """Segment timing in seconds; unreadable values become 0."""
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_subtitle_body(payload: Any) -> list[SubtitleSegment]:
    """
    Validate and parse a downloaded subtitle document.

    Args:
        payload: Decoded JSON of the subtitle file

    Returns:
        Segments in upstream order

    Raises:
        MalformedSubtitleData: Not an object, no ``body`` array, or a segment
            without a string ``content``
        EmptySubtitle: ``body`` is present but empty
    """
    if not isinstance(payload, dict):
        raise MalformedSubtitleData("Subtitle data is not a JSON object")

    body = payload.get("body")
    if not isinstance(body, list):
        raise MalformedSubtitleData(
            f"Subtitle data has no body array: {preview(json.dumps(payload, ensure_ascii=False), 200)}"
        )

    if not body:
        raise EmptySubtitle("Subtitle body is empty")

    segments = []
    for index, item in enumerate(body):
        if not isinstance(item, dict) or not isinstance(item.get("content"), str):
            raise MalformedSubtitleData(f"Subtitle segment {index} has no text content")
        segments.append(
            SubtitleSegment(
                start=_seconds(item.get("from")),
                end=_seconds(item.get("to")),
                content=item["content"],
            )
        )
    return segments


def build_transcript(segments: list[SubtitleSegment]) -> str:
    """Join segment text in order, one segment per line."""
    return "\n".join(segment.content for segment in segments)


class BilibiliClient:
    """
    Async client for the Bilibili endpoints used by the extractor.

    Every request carries a browser User-Agent, a bilibili.com Referer and,
    when configured, the caller's session cookie. Use as an async context
    manager::

        async with BilibiliClient(config) as client:
            metadata = await client.get_video_info("BV1GJ411x7h7")
    """

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            config: Settings instance. Uses defaults if None.
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.config = config or Settings()
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BilibiliClient":
        self._http = httpx.AsyncClient(
            timeout=self.config.request_timeout,
            transport=self._transport,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("BilibiliClient must be used as an async context manager")
        return self._http

    def build_headers(self, referer: str = BILIBILI_REFERER) -> dict[str, str]:
        """Browser-like headers, plus the session cookie when one is configured."""
        headers = {
            "User-Agent": self.config.bilibili_user_agent,
            "Referer": referer,
        }
        if self.config.bilibili_cookie:
            headers["Cookie"] = self.config.bilibili_cookie
        return headers

    async def _get_api_data(self, url: str, params: dict[str, Any], what: str) -> dict[str, Any]:
        """
        GET a JSON API endpoint and unwrap its embedded status envelope.

        Raises:
            NetworkError: Transport failure or non-2xx HTTP status
            UpstreamRejected: Non-zero embedded ``code`` or undecodable body
        """
        try:
            response = await self.http.get(url, params=params, headers=self.build_headers())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkError(f"Request for {what} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamRejected(f"Invalid JSON in {what} response") from e

        code = payload.get("code") if isinstance(payload, dict) else None
        if code != 0:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise UpstreamRejected(message or f"Failed to fetch {what}", upstream_code=code)

        return payload.get("data") or {}

    async def resolve_short_link(self, code: str) -> str:
        """
        Follow a b23.tv share link to the BV code it redirects to.

        Raises:
            InvalidUrl: The redirect target has no BV code
            NetworkError: Transport failure
        """
        url = SHORT_LINK_URL.format(code=code)
        try:
            response = await self.http.get(url, headers=self.build_headers())
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to resolve short link {code}: {e}") from e

        bvid = extract_bvid(str(response.url))
        if bvid is None or not is_bvid(bvid):
            raise InvalidUrl(f"Short link {code} does not point to a Bilibili video")
        logger.info(f"Resolved short link {code} -> {bvid}")
        return bvid

    async def get_video_info(self, bvid: str) -> VideoMetadata:
        """
        Fetch title, description and cid for a video.

        Raises:
            NetworkError: Transport failure
            UpstreamRejected: Non-zero embedded status
            MissingContentId: Response without a cid
        """
        data = await self._get_api_data(VIDEO_INFO_URL, {"bvid": bvid}, "video info")
        return VideoMetadata.from_api(bvid, data)

    async def fetch_primary_tracks(self, bvid: str, cid: int) -> list[SubtitleTrack]:
        """
        List tracks from the player v2 endpoint.

        Entries that are not objects and tracks with a blank URL are dropped.
        The separate ``ai_subtitle``
        object is appended when its URL is not already listed.
        """
        data = await self._get_api_data(
            PLAYER_V2_URL, {"bvid": bvid, "cid": cid}, "subtitle list"
        )
        subtitle = data.get("subtitle")
        if not isinstance(subtitle, dict):
            subtitle = {}
        items = subtitle.get("subtitles")
        if not isinstance(items, list):
            items = []

        tracks = [
            SubtitleTrack.from_api(item, SourceApi.primary)
            for item in items
            if isinstance(item, dict)
        ]
        usable = [track for track in tracks if track.has_download_url]
        logger.info(f"Player v2 listed {len(usable)}/{len(tracks)} tracks with a download URL")

        ai_item = subtitle.get("ai_subtitle")
        if isinstance(ai_item, dict) and ai_item.get("subtitle_url"):
            ai_track = SubtitleTrack(
                language_code=ai_item.get("lan") or AI_LANGUAGE_CODE,
                language_label=ai_item.get("lan_doc") or "AI生成字幕",
                download_url=ai_item["subtitle_url"],
                source_api=SourceApi.primary,
                is_ai_generated=True,
            )
            usable = merge_tracks(usable, [ai_track])

        return usable

    async def fetch_secondary_tracks(self, bvid: str, cid: int) -> list[SubtitleTrack]:
        """
        List tracks from the legacy player.so endpoint.

        Any failure here is logged and treated as "no tracks": this endpoint
        is only a fallback and its envelope format is not stable.
        """
        headers = self.build_headers()
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        try:
            response = await self.http.post(
                PLAYER_SO_URL,
                content=f"cid={cid}&aid=&bvid={bvid}",
                headers=headers,
            )
            response.raise_for_status()
            match = SUBTITLE_TAG_PATTERN.search(response.text)
            if not match:
                logger.info("player.so response has no <subtitle> block")
                return []
            payload = json.loads(match.group(1) or "{}")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"player.so lookup failed for {bvid}: {e}")
            return []

        items = payload.get("subtitles") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return []
        return [
            SubtitleTrack.from_api(item, SourceApi.secondary)
            for item in items
            if isinstance(item, dict)
        ]

    async def get_subtitle_catalog(self, bvid: str, cid: int) -> list[SubtitleTrack]:
        """
        Build the subtitle catalog for one video part.

        The legacy endpoint is only queried when the v2 endpoint yields no
        usable track. The result may be empty.
        """
        primary = await self.fetch_primary_tracks(bvid, cid)
        secondary: list[SubtitleTrack] = []
        if not primary:
            logger.info(f"No usable v2 tracks for {bvid}, trying player.so")
            secondary = await self.fetch_secondary_tracks(bvid, cid)
        return merge_tracks(primary, secondary)

    async def download_subtitle(self, download_url: str, bvid: str) -> str:
        """
        Download a subtitle file and flatten it into a transcript.

        Args:
            download_url: Track URL (protocol-relative URLs become https)
            bvid: Video the track belongs to, used for the Referer

        Returns:
            Segment contents joined with newlines, in upstream order

        Raises:
            NetworkError: Transport failure or timeout
            MalformedSubtitleData: Body is not the expected JSON shape
            EmptySubtitle: Body array is empty
        """
        url = normalize_subtitle_url(download_url)
        logger.info(f"Downloading subtitle: {url}")
        try:
            response = await self.http.get(
                url,
                headers=self.build_headers(referer=f"{BILIBILI_REFERER}/video/{bvid}"),
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to download subtitle: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedSubtitleData("Subtitle response is not valid JSON") from e

        segments = parse_subtitle_body(payload)
        transcript = build_transcript(segments)
        logger.info(
            f"Subtitle has {len(segments)} segments, {len(transcript)} characters; "
            f"first line: {preview(segments[0].content, 40)}"
        )
        return transcript

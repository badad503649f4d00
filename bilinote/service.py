"""
Subtitle extraction service for Bilibili videos.

This module implements the extraction pipeline the note generator depends on:

    URL -> BV code -> video info -> subtitle catalog -> track selection
        -> download -> relevance validation

The upstream occasionally returns a transcript that belongs to a different
video, or lists a track with an unusable URL, and simply asking again often
fixes it. The orchestrator therefore re-runs the whole pipeline from the
video-info fetch onward, with nothing reused between attempts:

    1. Invalid track URL: wait a fixed delay, retry
    2. Rejected transcript or other retryable errors (malformed subtitle
       data): linear backoff ((attempt + 1) * step), retry
    3. Errors not flagged ``retryable`` (network errors, upstream
       rejections, empty catalogs): fail immediately

Attempts are bounded by ``Settings.max_retries`` (3 retries, 4 attempts).
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, TypeVar

import httpx

from bilinote.bilibili import BilibiliClient, SubtitleTrack, VideoMetadata
from bilinote.config import Settings
from bilinote.errors import (
    ExtractionCancelled,
    ExtractionError,
    InvalidTrackUrl,
    InvalidUrl,
    MalformedTrackUrl,
    NoSubtitlesAvailable,
    SubtitleUrlInvalid,
    ValidationExhausted,
)
from bilinote.utils import extract_bvid, is_bvid, is_well_formed_track_url, sanitize_for_log
from bilinote.validator import RelevanceValidator, ValidationOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHINESE_LANGUAGE_CODES = ("zh-CN", "zh-Hans")


def _is_ai_track(track: SubtitleTrack) -> bool:
    return track.is_ai_generated or track.language_code == "ai-zh" or "AI" in track.language_label


def _is_chinese_track(track: SubtitleTrack) -> bool:
    return track.language_code in CHINESE_LANGUAGE_CODES or "中" in track.language_label


def select_track(catalog: list[SubtitleTrack]) -> SubtitleTrack:
    """
    Choose one track from a non-empty catalog.

    Priority, first match wins:
        1. An AI-generated track
        2. A Simplified Chinese track (zh-CN / zh-Hans, or a label with 中)
        3. The first track in catalog order

    Raises:
        NoSubtitlesAvailable: The catalog is empty
        InvalidTrackUrl: The chosen track has an empty download URL
        MalformedTrackUrl: The chosen track URL is neither absolute nor
            protocol-relative
    """
    if not catalog:
        raise NoSubtitlesAvailable("No subtitle tracks to choose from")

    ai_track = next((t for t in catalog if _is_ai_track(t)), None)
    zh_track = next((t for t in catalog if _is_chinese_track(t)), None)
    track = ai_track or zh_track or catalog[0]

    strategy = "AI track" if ai_track else ("Chinese track" if zh_track else "first track")
    logger.info(
        f"Selected {track.language_label or track.language_code} "
        f"({track.language_code}, {track.source_api.value}) by {strategy}"
    )

    if not track.download_url.strip():
        raise InvalidTrackUrl(
            f"Selected subtitle track has no download URL: {track.language_label}",
            track_label=track.language_label,
        )
    if not is_well_formed_track_url(track.download_url):
        raise MalformedTrackUrl(
            f"Selected subtitle track has a malformed URL: {sanitize_for_log(track.download_url)}",
            track_label=track.language_label,
        )
    return track


@dataclass
class ExtractionResult:
    """
    Successful extraction.

    Attributes:
        title: Video title
        transcript: Newline-joined subtitle text
        bvid: Canonical BV code
        track: Track the transcript came from
        validation: Outcome that accepted the transcript
        attempts: Number of attempts it took (1 when the first one succeeded)
    """

    title: str
    transcript: str
    bvid: str
    track: SubtitleTrack
    validation: ValidationOutcome
    attempts: int = 1


@dataclass
class AttemptOutcome:
    """What a single pass through the pipeline produced."""

    metadata: VideoMetadata
    track: SubtitleTrack
    transcript: str
    validation: ValidationOutcome


@dataclass
class AttemptState:
    """
    Bookkeeping for one extraction request.

    Attributes:
        max_retries: Retries allowed after the first attempt
        attempt: Zero-based index of the current attempt
        delays: Backoff delays waited so far, in order
    """

    max_retries: int
    attempt: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries

    @property
    def label(self) -> str:
        return f"{self.attempt + 1}/{self.max_retries + 1}"


async def backoff_sleep(seconds: float) -> None:
    """Suspend the current request only."""
    await asyncio.sleep(seconds)


class SubtitleExtractor:
    """
    Extracts and validates the transcript of a Bilibili video.

    One instance can serve many requests concurrently: every ``extract`` call
    opens its own upstream client and keeps its attempt state local.
    """

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the extractor with configuration.

        Args:
            config: Settings instance. Uses defaults if None.
            transport: Optional httpx transport for the upstream client
        """
        self.config = config or Settings()
        self.validator = RelevanceValidator(self.config)
        self._transport = transport

    def _client(self) -> BilibiliClient:
        return BilibiliClient(self.config, transport=self._transport)

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Linear backoff after a rejected transcript: 2s, 4s, 6s by default."""
        return (attempt + 1) * self.config.retry_backoff_step

    async def _run_cancellable(
        self, awaitable: Awaitable[T], cancel_event: asyncio.Event | None
    ) -> T:
        """
        Await ``awaitable`` unless ``cancel_event`` is set first.

        When the event wins, the pending work (an in-flight HTTP call or a
        backoff wait) is cancelled and ExtractionCancelled is raised.
        """
        if cancel_event is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise ExtractionCancelled("Extraction cancelled by caller")

    async def _resolve_bvid(self, client: BilibiliClient, identifier: str) -> str:
        if is_bvid(identifier):
            return identifier
        return await client.resolve_short_link(identifier)

    async def _run_attempt(
        self, client: BilibiliClient, bvid: str, state: AttemptState
    ) -> AttemptOutcome:
        """One full pass: metadata, catalog, selection, download, validation."""
        metadata = await client.get_video_info(bvid)
        logger.info(
            f"Attempt {state.label}: {sanitize_for_log(metadata.title)} "
            f"(bvid={bvid}, cid={metadata.cid})"
        )

        catalog = await client.get_subtitle_catalog(bvid, metadata.cid)
        for index, track in enumerate(catalog):
            logger.debug(
                f"  [{index}] {track.language_label} ({track.language_code}) "
                f"{track.source_api.value} id={track.track_id or 'N/A'}"
            )
        if not catalog:
            raise NoSubtitlesAvailable(
                f"Video {bvid} has no subtitles; videos without subtitles are not supported yet"
            )

        track = select_track(catalog)
        transcript = await client.download_subtitle(track.download_url, bvid)

        validation = self.validator.validate(
            metadata.title, metadata.description, transcript, track.language_label
        )
        return AttemptOutcome(
            metadata=metadata, track=track, transcript=transcript, validation=validation
        )

    async def extract(
        self, video_url: str, cancel_event: asyncio.Event | None = None
    ) -> ExtractionResult:
        """
        Extract a validated transcript from a Bilibili video URL.

        Args:
            video_url: Bilibili video URL, b23.tv share link, or text with a BV code
            cancel_event: Optional event; when set, the request stops before
                the next attempt and any in-flight upstream call is aborted

        Returns:
            ExtractionResult with the title and transcript

        Raises:
            InvalidUrl: No identifier in the input (raised before any network call)
            NetworkError: Transport failure on any upstream call (not retried)
            UpstreamRejected: Non-zero status from video info or subtitle list
            NoSubtitlesAvailable: Both subtitle endpoints came back empty
            SubtitleUrlInvalid: Every attempt selected an unusable track URL
            MalformedSubtitleData: The last attempt downloaded malformed data
            ValidationExhausted: Every attempt failed relevance validation
            ExtractionCancelled: ``cancel_event`` was set
        """
        identifier = extract_bvid(video_url)
        if identifier is None:
            logger.warning(f"Invalid URL provided: {sanitize_for_log(video_url)}")
            raise InvalidUrl(f"Invalid Bilibili video URL: {video_url}")

        state = AttemptState(max_retries=self.config.max_retries)

        async with self._client() as client:
            bvid = await self._run_cancellable(self._resolve_bvid(client, identifier), cancel_event)

            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise ExtractionCancelled("Extraction cancelled by caller")

                try:
                    outcome = await self._run_cancellable(
                        self._run_attempt(client, bvid, state), cancel_event
                    )
                except ExtractionError as e:
                    if not e.retryable:
                        raise
                    if state.exhausted:
                        if isinstance(e, InvalidTrackUrl):
                            logger.error(f"Track URL still invalid after {state.label} attempts")
                            raise SubtitleUrlInvalid(
                                "Subtitle URL is invalid; the video may require login or have "
                                f"no usable subtitles. Selected track: {e.track_label}"
                            ) from e
                        logger.error(f"{e.code} still raised after {state.label} attempts")
                        raise
                    if isinstance(e, InvalidTrackUrl):
                        delay = self.config.invalid_url_retry_delay
                    else:
                        delay = self._calculate_retry_delay(state.attempt)
                    logger.warning(f"{e.message}. Retrying in {delay:.0f}s ({state.label})")
                else:
                    validation = outcome.validation
                    if validation.accepted:
                        logger.info(
                            f"Transcript accepted on attempt {state.label} "
                            f"({validation.match_rate:.1%}, "
                            f"keywords: {', '.join(validation.matched_keywords[:5])})"
                        )
                        return ExtractionResult(
                            title=outcome.metadata.title,
                            transcript=outcome.transcript,
                            bvid=bvid,
                            track=outcome.track,
                            validation=validation,
                            attempts=state.attempt + 1,
                        )

                    if state.exhausted:
                        logger.error(
                            f"Transcript still rejected after {state.label} attempts: "
                            f"{validation.reason}"
                        )
                        raise ValidationExhausted(
                            f"Subtitle validation failed: {validation.reason}. "
                            f"Transcript for \"{outcome.metadata.title}\" matched only "
                            f"{validation.match_rate:.1%} of keywords. Please try again later.",
                            match_rate=validation.match_rate,
                            reason=validation.reason,
                        )

                    delay = self._calculate_retry_delay(state.attempt)
                    logger.warning(
                        f"Transcript does not match video ({validation.reason}); "
                        f"track {outcome.track.language_label}. Retrying in {delay:.0f}s ({state.label})"
                    )

                state.delays.append(delay)
                await self._run_cancellable(backoff_sleep(delay), cancel_event)
                state.attempt += 1


def get_extractor(config: Settings | None = None) -> SubtitleExtractor:
    """
    Get a configured SubtitleExtractor instance.

    The API builds one per request so configuration updates apply immediately.
    """
    return SubtitleExtractor(config)

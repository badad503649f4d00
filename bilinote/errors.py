"""
Typed failures raised by the extraction pipeline.

Every failure carries a stable ``code`` (used as the ``error`` field of API
responses), a human-readable ``message`` and whether the orchestrator may
retry the attempt that produced it.
"""


class ExtractionError(Exception):
    """Base class for all extraction failures."""

    code = "extraction_failed"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidUrl(ExtractionError):
    """No video identifier could be parsed from the input."""

    code = "invalid_url"


class UpstreamRejected(ExtractionError):
    """An upstream endpoint answered with a non-zero embedded status code."""

    code = "upstream_rejected"

    def __init__(self, message: str, upstream_code: int | None = None):
        self.upstream_code = upstream_code
        super().__init__(message)


class MissingContentId(UpstreamRejected):
    """Video info came back without a cid, so subtitles cannot be queried."""

    code = "missing_content_id"


class NetworkError(ExtractionError):
    """Transport-level failure: timeout, DNS, connection reset, bad HTTP status."""

    code = "network_error"


class NoSubtitlesAvailable(ExtractionError):
    """Neither subtitle endpoint listed a usable track."""

    code = "no_subtitles"


class InvalidTrackUrl(ExtractionError):
    """The selected track has an empty download URL."""

    code = "invalid_track_url"
    retryable = True

    def __init__(self, message: str, track_label: str = ""):
        self.track_label = track_label
        super().__init__(message)


class MalformedTrackUrl(InvalidTrackUrl):
    """The selected track URL is neither absolute nor protocol-relative."""

    code = "malformed_track_url"


class SubtitleUrlInvalid(ExtractionError):
    """Every attempt selected a track with an unusable download URL."""

    code = "subtitle_url_invalid"


class MalformedSubtitleData(ExtractionError):
    """Downloaded subtitle JSON does not have the expected ``body`` shape."""

    code = "malformed_subtitle_data"
    retryable = True


class EmptySubtitle(MalformedSubtitleData):
    """Downloaded subtitle has a ``body`` array with no segments."""

    code = "empty_subtitle"


class ValidationExhausted(ExtractionError):
    """Every attempt produced a transcript that failed relevance scoring."""

    code = "validation_exhausted"

    def __init__(self, message: str, match_rate: float = 0.0, reason: str | None = None):
        self.match_rate = match_rate
        self.reason = reason
        super().__init__(message)


class ExtractionCancelled(ExtractionError):
    """The caller signalled cancellation before the next attempt started."""

    code = "cancelled"

"""
Relevance validation for downloaded transcripts.

The subtitle endpoints occasionally hand back a transcript that belongs to a
different video. This module scores a transcript against keywords taken from
the video's own title and description and decides whether to accept it.

It is a heuristic aimed at gross mismatches (a wrong video's transcript
entirely), not at subtle ones; false accepts and false rejects are both
expected at the margins.
"""

import logging
import re
from dataclasses import dataclass, field

from bilinote.config import Settings

logger = logging.getLogger(__name__)

# Punctuation and symbols: CJK punctuation, full-width forms, general
# punctuation and printable ASCII that is neither a digit nor a letter
PUNCTUATION_PATTERN = re.compile(
    r"[\u3000-\u303f\uff00-\uffef\u2000-\u206f\u0020-\u002f\u003a-\u0040\u005b-\u0060\u007b-\u007e]"
)
LATIN_PATTERN = re.compile(r"[a-zA-Z]")
CJK_PATTERN = re.compile(r"[\u4e00-\u9fa5]")
CJK_RUN_PATTERN = re.compile(r"[\u4e00-\u9fa5]{2,}")

STOP_WORDS = frozenset({
    "这个", "那个", "一些", "这些", "那些", "可以", "已经", "就是", "所以", "因为", "但是",
    "然后", "这样", "那么", "这里", "那里", "一直", "现在", "不是", "没有", "什么", "也是",
    "很多", "非常", "比较",
    "about", "above", "across", "after", "again", "against", "all", "almost", "along",
    "also", "although", "always", "among", "an", "and", "another", "any", "are", "around",
    "as", "at", "back", "been", "before", "began", "being", "below", "between", "both",
    "but", "by", "can", "cannot", "could", "did", "do", "does", "doing", "down", "each",
    "during", "either", "else", "even", "ever", "every", "first", "for", "found", "from",
    "had", "has", "have", "having", "her", "here", "him", "his", "how", "however", "hundred",
    "into", "its", "just", "know", "large", "last", "later", "like", "little", "long",
    "made", "make", "man", "many", "may", "men", "might", "more", "most", "much", "must",
    "never", "new", "next", "not", "now", "num", "number", "off", "old", "once", "one",
    "only", "other", "our", "out", "over", "own", "part", "people", "place", "put", "real",
    "right", "said", "same", "saw", "say", "see", "seem", "several", "she", "should", "show",
    "side", "small", "so", "some", "something", "take", "tell", "than", "that", "the", "their",
    "them", "then", "there", "these", "they", "thing", "think", "this", "through", "time",
    "to", "too", "two", "under", "up", "use", "very", "was", "water", "way", "we", "well",
    "went", "were", "what", "when", "where", "which", "while", "who", "will", "with", "words",
    "work", "world", "would", "write", "year", "years", "you", "your",
})

# Topic markers used to flag wrong-topic leakage in the logs
TOPIC_MARKERS: dict[str, tuple[str, ...]] = {
    "gaming": ("电竞", "比赛", "战队", "选手", "解说", "WBG", "LNG", "BLG", "RNG", "EDG", "JDG"),
    "entertainment": ("综艺", "娱乐", "明星", "八卦"),
}


@dataclass(frozen=True)
class ValidationOutcome:
    """
    Result of scoring one transcript.

    Attributes:
        accepted: Whether the transcript is considered to belong to the video
        match_rate: Matched / checked keywords, in [0, 1]
        matched_keywords: Keywords found verbatim in the transcript
        reason: Why the transcript was rejected (or accepted by a special rule)
        threshold: Threshold the rate was compared against
        warnings: Informational anomaly notes; never affect acceptance
    """

    accepted: bool
    match_rate: float
    matched_keywords: tuple[str, ...] = ()
    reason: str | None = None
    threshold: float | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)


def _has_cjk(word: str) -> bool:
    return CJK_PATTERN.search(word) is not None


def extract_keywords(text: str) -> list[str]:
    """
    Extract keyword candidates from a title or description.

    Latin tokens (length >= 2) come from whitespace splitting after
    punctuation is removed. CJK runs of 2+ characters are taken from the raw
    text; long runs are also split into shorter pieces so a paraphrasing
    transcript can still match part of them:

    - 6+ characters: 3-character windows every 2 characters, plus the run
    - 4-5 characters: the leading and trailing 3 characters, plus the run
    - 2-3 characters: the run itself

    Stop words are dropped. The result is unique, CJK-first, and otherwise
    ordered by descending length (longer terms are more specific).

    Examples:
        >>> extract_keywords("费曼的学习心智模型")
        ['费曼的学习心智模型', '费曼的', '的学习', '习心智', '智模型']
        >>> extract_keywords("Python 入门")
        ['入门', 'Python']
    """
    if not text:
        return []

    cleaned = PUNCTUATION_PATTERN.sub(" ", text)
    words = [w for w in cleaned.split() if len(w) >= 2 and LATIN_PATTERN.search(w)]

    for phrase in CJK_RUN_PATTERN.findall(text):
        if len(phrase) >= 6:
            words.extend(phrase[i:i + 3] for i in range(0, len(phrase) - 2, 2))
            words.append(phrase)
        elif len(phrase) >= 4:
            words.append(phrase[:3])
            words.append(phrase[-3:])
            words.append(phrase)
        else:
            words.append(phrase)

    unique = [
        w for w in dict.fromkeys(words)
        if len(w) >= 2 and w.lower() not in STOP_WORDS
    ]
    # sorted() is stable, so equal-length terms keep extraction order
    return sorted(unique, key=lambda w: (not _has_cjk(w), -len(w)))


def detect_topic_leakage(title: str, subtitle: str) -> list[str]:
    """List topic groups present in the transcript but absent from the title."""
    warnings = []
    lowered_title = title.lower()
    lowered_subtitle = subtitle.lower()
    for topic, markers in TOPIC_MARKERS.items():
        in_subtitle = [m for m in markers if m.lower() in lowered_subtitle]
        if in_subtitle and not any(m.lower() in lowered_title for m in markers):
            warnings.append(f"{topic} terms in transcript but not in title: {', '.join(in_subtitle[:3])}")
    return warnings


class RelevanceValidator:
    """Scores transcripts with the thresholds from a Settings instance."""

    def __init__(self, config: Settings | None = None):
        self.config = config or Settings()

    def threshold_for(self, subtitle_label: str) -> float:
        """AI transcripts paraphrase more, so they get the lower threshold."""
        if "AI" in subtitle_label:
            return self.config.ai_match_threshold
        return self.config.match_threshold

    def validate(
        self, title: str, description: str, subtitle: str, subtitle_label: str = ""
    ) -> ValidationOutcome:
        """
        Decide whether ``subtitle`` belongs to the video titled ``title``.

        Args:
            title: Video title
            description: Video description
            subtitle: Downloaded transcript
            subtitle_label: Track label (``lan_doc``); "AI" lowers the threshold

        Returns:
            ValidationOutcome
        """
        config = self.config
        logger.info(
            f"Validating {len(subtitle)}-character transcript ({subtitle_label or 'unlabelled'}) "
            f"against title {title!r}"
        )

        if len(subtitle) < config.min_subtitle_length:
            logger.warning(f"Transcript too short: {len(subtitle)} characters")
            return ValidationOutcome(
                accepted=False,
                match_rate=0.0,
                reason=f"too short (<{config.min_subtitle_length} characters)",
            )

        title_keywords = extract_keywords(title)
        desc_keywords = extract_keywords(description)
        # Title terms repeated in the description are checked twice
        all_keywords = [*title_keywords, *desc_keywords]
        logger.debug(f"Title keywords: {title_keywords[:10]}, description keywords: {desc_keywords[:5]}")

        warnings = tuple(detect_topic_leakage(title, subtitle))
        for warning in warnings:
            logger.warning(f"Possible wrong-topic transcript: {warning}")

        if not all_keywords:
            logger.info("No keywords extracted, skipping relevance check")
            return ValidationOutcome(
                accepted=True, match_rate=1.0, reason="no keywords", warnings=warnings
            )

        checked = all_keywords[: config.max_checked_keywords]
        matched = tuple(kw for kw in checked if kw in subtitle)
        match_rate = len(matched) / len(checked)
        threshold = self.threshold_for(subtitle_label)
        logger.info(
            f"Matched {len(matched)}/{len(checked)} keywords ({match_rate:.1%}), "
            f"threshold {threshold:.0%}"
        )

        if (
            len(subtitle) > config.long_subtitle_length
            and len(matched) >= config.long_subtitle_min_matches
        ):
            return ValidationOutcome(
                accepted=True,
                match_rate=match_rate,
                matched_keywords=matched,
                reason="long transcript with enough keyword matches",
                threshold=threshold,
                warnings=warnings,
            )

        if match_rate >= threshold:
            return ValidationOutcome(
                accepted=True,
                match_rate=match_rate,
                matched_keywords=matched,
                threshold=threshold,
                warnings=warnings,
            )

        return ValidationOutcome(
            accepted=False,
            match_rate=match_rate,
            matched_keywords=matched,
            reason=f"keyword match rate too low ({match_rate:.1%} < {threshold:.0%})",
            threshold=threshold,
            warnings=warnings,
        )


def validate_subtitle_content(
    title: str,
    description: str,
    subtitle: str,
    subtitle_label: str = "",
    config: Settings | None = None,
) -> ValidationOutcome:
    """Convenience wrapper around ``RelevanceValidator(config).validate``."""
    return RelevanceValidator(config).validate(title, description, subtitle, subtitle_label)

"""
Tests for keyword extraction and transcript relevance validation.
"""

import pytest

from bilinote.config import Settings
from bilinote.validator import (
    RelevanceValidator,
    detect_topic_leakage,
    extract_keywords,
    validate_subtitle_content,
)
from conftest import MATCHING_LINES, MISMATCHED_LINES, TEST_TITLE

FILLER = "嗯" * 60


@pytest.fixture
def validator():
    return RelevanceValidator(Settings(_env_file=None))


class TestExtractKeywords:
    """Tests for extract_keywords."""

    def test_long_cjk_run_is_windowed(self):
        """Test that 6+ character runs yield 3-character windows and the run."""
        assert extract_keywords(TEST_TITLE) == ["费曼的学习心智模型", "费曼的", "的学习", "习心智", "智模型"]

    def test_medium_cjk_run(self):
        """Test that 4-5 character runs yield their ends and the run."""
        assert extract_keywords("心智模型") == ["心智模型", "心智模", "智模型"]

    def test_latin_tokens(self):
        """Test that Latin tokens survive punctuation and short ones are dropped."""
        assert extract_keywords("C 语言 vs. Rust: a comparison!") == ["语言", "comparison", "Rust", "vs"]

    def test_stop_words_removed(self):
        """Test that stop words are excluded case-insensitively."""
        keywords = extract_keywords("这个 视频 The Python")

        assert "这个" not in keywords
        assert "The" not in keywords
        assert keywords == ["视频", "Python"]

    def test_unique(self):
        """Test that repeated terms appear once."""
        assert extract_keywords("Python Python 入门 入门") == ["入门", "Python"]

    def test_empty(self):
        assert extract_keywords("") == []
        assert extract_keywords("！？。") == []


class TestRelevanceValidator:
    """Tests for RelevanceValidator.validate."""

    def test_too_short_is_rejected(self, validator):
        """Test that transcripts under the minimum length are rejected."""
        outcome = validator.validate(TEST_TITLE, "", "费曼的学习")

        assert not outcome.accepted
        assert outcome.match_rate == 0.0
        assert "too short" in outcome.reason

    def test_matching_transcript_is_accepted(self, validator):
        """Test that the transcript of the right video is accepted."""
        outcome = validator.validate(TEST_TITLE, "", "\n".join(MATCHING_LINES), "中文（中国）")

        assert outcome.accepted
        assert outcome.match_rate == 1.0
        assert "费曼的" in outcome.matched_keywords

    def test_partial_match_above_threshold(self, validator):
        """Test that one matching window out of five is enough."""
        subtitle = "我们今天讨论一下费曼的方法，" + FILLER

        outcome = validator.validate(TEST_TITLE, "", subtitle, "中文（中国）")

        assert outcome.accepted
        assert outcome.match_rate == pytest.approx(0.2)
        assert outcome.matched_keywords == ("费曼的",)

    def test_wrong_video_transcript_is_rejected(self, validator):
        """Test that an unrelated transcript is rejected with a reason."""
        outcome = validator.validate(TEST_TITLE, "", "\n".join(MISMATCHED_LINES), "中文（中国）")

        assert not outcome.accepted
        assert outcome.match_rate == 0.0
        assert "match rate too low" in outcome.reason
        assert outcome.threshold == 0.15

    def test_no_keywords_is_accepted(self, validator):
        """Test that a title without usable keywords skips the check."""
        outcome = validator.validate("！！！", "", FILLER)

        assert outcome.accepted
        assert outcome.match_rate == 1.0
        assert outcome.reason == "no keywords"

    def test_ai_track_uses_lower_threshold(self, validator):
        """Test that a 10% match passes for AI tracks only."""
        title = "alpha beta gamma delta epsilon zeta theta iota kappa lambda"
        subtitle = "alpha " + FILLER

        ai_outcome = validator.validate(title, "", subtitle, "中文（AI生成）")
        manual_outcome = validator.validate(title, "", subtitle, "中文（中国）")

        assert ai_outcome.match_rate == pytest.approx(0.1)
        assert ai_outcome.accepted
        assert ai_outcome.threshold == 0.10
        assert not manual_outcome.accepted

    def test_title_terms_repeated_in_description_count_twice(self, validator):
        """Test that a term in both title and description is checked twice."""
        outcome = validator.validate("Python", "Python", "Python " + FILLER)

        assert outcome.matched_keywords == ("Python", "Python")
        assert outcome.match_rate == 1.0

    def test_repeated_title_terms_fill_the_keyword_cap(self, validator):
        """Test that a description echoing the title crowds out its new terms."""
        title = " ".join(f"kw{i:02d}" for i in range(15))
        description = " ".join(f"kw{i:02d}" for i in range(20))
        subtitle = " ".join(f"kw{i:02d}" for i in range(15, 20)) + FILLER

        outcome = validator.validate(title, description, subtitle)

        assert outcome.match_rate == 0.0
        assert not outcome.accepted

    def test_at_most_twenty_keywords_checked(self):
        """Test that only the first twenty keywords count toward the rate."""
        validator = RelevanceValidator(Settings(_env_file=None))
        title = " ".join(f"kw{i:02d}" for i in range(30))
        subtitle = " ".join(f"kw{i:02d}" for i in range(20, 30)) + FILLER

        outcome = validator.validate(title, "", subtitle)

        assert outcome.match_rate == 0.0

    def test_long_transcript_override(self):
        """Test that a long transcript with three matches is accepted below threshold."""
        validator = RelevanceValidator(Settings(_env_file=None, match_threshold=0.5))
        title = " ".join(f"kw{i:02d}" for i in range(20))
        matches = "kw00 kw01 kw02 "

        long_outcome = validator.validate(title, "", matches + "嗯" * 2100)
        short_outcome = validator.validate(title, "", matches + FILLER)

        assert long_outcome.accepted
        assert long_outcome.match_rate == pytest.approx(0.15)
        assert long_outcome.reason == "long transcript with enough keyword matches"
        assert not short_outcome.accepted

    def test_match_rate_is_bounded(self, validator):
        """Test that the match rate stays within [0, 1]."""
        for subtitle in ("\n".join(MATCHING_LINES), "\n".join(MISMATCHED_LINES), FILLER):
            outcome = validator.validate(TEST_TITLE, "学习方法", subtitle)
            assert 0.0 <= outcome.match_rate <= 1.0

    def test_topic_warnings_do_not_change_acceptance(self, validator):
        """Test that wrong-topic markers are reported but not decisive."""
        subtitle = "\n".join(MATCHING_LINES) + "\n就像一场比赛"

        outcome = validator.validate(TEST_TITLE, "", subtitle)

        assert outcome.accepted
        assert outcome.warnings

    def test_threshold_for_label(self, validator):
        assert validator.threshold_for("AI生成字幕") == 0.10
        assert validator.threshold_for("中文（中国）") == 0.15


class TestHelpers:
    """Tests for module-level helpers."""

    def test_detect_topic_leakage(self):
        """Test that esports terms are flagged only when the title lacks them."""
        assert detect_topic_leakage(TEST_TITLE, "\n".join(MISMATCHED_LINES))
        assert detect_topic_leakage("WBG 对 LNG 比赛回放", "\n".join(MISMATCHED_LINES)) == []

    def test_validate_subtitle_content(self):
        """Test the module-level convenience wrapper."""
        outcome = validate_subtitle_content(
            TEST_TITLE, "", "\n".join(MATCHING_LINES), config=Settings(_env_file=None)
        )

        assert outcome.accepted

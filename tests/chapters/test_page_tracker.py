"""
Unit tests for page-number tracking.
"""

from bookscan.chapters.pages import PageTracker, find_page_token, track_pages


class TestPageTracker:
    """Test the page-number state machine."""

    def setup_method(self):
        self.tracker = PageTracker(max_page_number=2000, max_page_jump=10)

    def _feed(self, numbers):
        for segment, number in enumerate(numbers):
            self.tracker.observe(number, segment)
        self.tracker.finish()

    def test_consecutive_pages(self):
        self._feed([5, 6, 7])

        assert self.tracker.pages == [5, 6, 7]
        assert self.tracker.page_gaps() == []

    def test_decreasing_number_is_ignored(self):
        self._feed([5, 3, 6])

        assert self.tracker.pages == [5, 6]
        assert self.tracker.rejected == [3]

    def test_small_jump_is_a_gap(self):
        self._feed([5, 8])

        gaps = self.tracker.page_gaps()
        assert [(g.after_page, g.before_page, g.missing_count) for g in gaps] == [(5, 8, 2)]

    def test_confirmed_large_jump(self):
        self._feed([5, 40, 41])

        assert self.tracker.pages == [5, 40, 41]
        assert self.tracker.segment_pages == {0: 5, 1: 40, 2: 41}

    def test_unconfirmed_large_jump_is_dropped(self):
        self._feed([5, 40, 6])

        assert self.tracker.pages == [5, 6]
        assert 40 in self.tracker.rejected

    def test_trailing_jump_is_dropped(self):
        self._feed([5, 6, 400])

        assert self.tracker.pages == [5, 6]
        assert self.tracker.pending is None

    def test_out_of_range(self):
        self._feed([0, 2500, 3])

        assert self.tracker.pages == [3]


class TestFindPageToken:
    def test_bottom_line(self):
        assert find_page_token(["Text", "", "- 12 -", ""]) == 12

    def test_top_line(self):
        assert find_page_token(["[7]", "Text"]) == 7

    def test_bottom_wins(self):
        assert find_page_token(["3", "Text", "4"]) == 4

    def test_number_inside_text_is_ignored(self):
        assert find_page_token(["Text", "12", "More text"]) is None

    def test_empty_segment(self):
        assert find_page_token(["", ""]) is None


def test_track_pages_over_segments():
    tracker = track_pages([["Text", "1"], ["Text"], ["Text", "3"]])

    assert tracker.pages == [1, 3]
    assert tracker.segment_pages == {0: 1, 2: 3}

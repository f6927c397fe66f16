"""
Chunking tests.
Fixed 500 character windows starting every 450 characters.
"""
import pytest

from knowledge.chunker import CHUNK_OVERLAP, CHUNK_SIZE, expected_chunk_count, split_text


class TestSplitText:
    """Test window boundaries."""

    def test_short_text_single_window(self):
        windows = split_text("hello world")

        assert len(windows) == 1
        assert windows[0].text == "hello world"
        assert windows[0].sequence_index == 0
        assert (windows[0].start_offset, windows[0].end_offset) == (0, 11)

    def test_exactly_one_window(self):
        windows = split_text("a" * CHUNK_SIZE)
        assert len(windows) == 1

    def test_1200_chars_gives_three_windows(self):
        """Windows at [0,500), [450,950), [900,1200)."""
        text = "".join(chr(ord("a") + i % 26) for i in range(1200))

        windows = split_text(text)

        assert [(w.start_offset, w.end_offset) for w in windows] == [(0, 500), (450, 950), (900, 1200)]
        assert [w.sequence_index for w in windows] == [0, 1, 2]
        assert windows[2].text == text[900:]

    def test_consecutive_windows_overlap(self):
        text = "".join(str(i % 10) for i in range(2000))

        windows = split_text(text)

        for prev, cur in zip(windows, windows[1:]):
            assert prev.text[-CHUNK_OVERLAP:] == cur.text[:CHUNK_OVERLAP]

    def test_no_trailing_window_inside_overlap(self):
        """A 950 char text ends exactly with the second window."""
        windows = split_text("x" * 950)
        assert len(windows) == 2
        assert windows[-1].end_offset == 950

    def test_empty_text(self):
        assert split_text("") == []

    @pytest.mark.parametrize("size,overlap", [(100, 100), (100, 150), (100, -1)])
    def test_invalid_overlap(self, size, overlap):
        with pytest.raises(ValueError):
            split_text("abc", size, overlap)

    @pytest.mark.parametrize("length", [1, 499, 500, 501, 950, 951, 1200, 5000])
    def test_expected_count_matches(self, length):
        assert len(split_text("y" * length)) == expected_chunk_count(length)

"""Tests for domain entities and the popularity index."""

from datetime import UTC, datetime

import pytest

from spindex.domain.entities import Artist, SnapshotPoint, Track, calculate_spi


class TestCalculateSpi:
    """SPI is popularity on a 0-100 scale with one decimal, rounded half-up."""

    @pytest.mark.parametrize(
        ("popularity", "expected"),
        [
            (0, 0.0),
            (57, 57.0),
            (100, 100.0),
            (57.26, 57.3),
            (57.24, 57.2),
            (None, 0.0),
        ],
    )
    def test_values(self, popularity: float | None, expected: float) -> None:
        """Known popularity values map to their index."""
        assert calculate_spi(popularity) == expected


class TestArtist:
    """Test Artist entity."""

    def test_empty_id_rejected(self) -> None:
        """An artist needs Spotify's id."""
        with pytest.raises(ValueError):
            Artist(id="  ", name="Nobody")

    def test_placeholder(self) -> None:
        """Placeholder carries the id and a neutral name, zero stats."""
        artist = Artist.placeholder("abc123")
        assert artist.id == "abc123"
        assert artist.name == "Unknown Artist"
        assert artist.popularity == 0
        assert artist.spi == 0.0


class TestTrack:
    """Test Track entity."""

    def test_negative_duration_rejected(self) -> None:
        """Durations can't be negative."""
        with pytest.raises(ValueError):
            Track(id="t1", name="T", duration_ms=-1)


class TestSnapshotPoint:
    """Test SnapshotPoint."""

    def test_spi_recomputed_from_popularity(self) -> None:
        """The point never stores spi, it derives it."""
        point = SnapshotPoint(captured_at=datetime(2026, 1, 1, tzinfo=UTC), popularity=42)
        assert point.spi == 42.0

# tests/test_config.py
import pytest
from catalog_pipeline.config import PersonalizationBoosts, RelevanceWeights, get_db_path


def test_weights_sum_to_one():
    """Test that all weights sum to 1.0"""
    total = sum([
        RelevanceWeights.POPULARITY,
        RelevanceWeights.RECENCY,
        RelevanceWeights.EDITORIAL,
    ])
    assert abs(total - 1.0) < 0.001


def test_weights_validate_on_import():
    """Test that validate() is called and works"""
    assert RelevanceWeights.validate() is True


def test_invalid_weights_raise_error():
    """Test that weights not summing to 1.0 raise error"""
    original = RelevanceWeights.POPULARITY
    RelevanceWeights.POPULARITY = 0.9

    try:
        with pytest.raises(AssertionError, match="Weights must sum to 1.0"):
            RelevanceWeights.validate()
    finally:
        RelevanceWeights.POPULARITY = original


def test_release_boosts_outweigh_track_boosts():
    assert PersonalizationBoosts.RELEASE_FOLLOWED_CREATOR > PersonalizationBoosts.TRACK_FOLLOWED_CREATOR
    assert PersonalizationBoosts.RELEASE_FAVORED_GENRE > PersonalizationBoosts.TRACK_FAVORED_GENRE


def test_db_path_from_environment(monkeypatch, tmp_path):
    target = str(tmp_path / "catalog.db")
    monkeypatch.setenv("CATALOG_DB_PATH", target)
    assert get_db_path() == target

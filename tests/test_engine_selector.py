"""Tests for the REST/Bulk cost heuristics."""

from datamove.models.config import EngineSettings
from datamove.services.engine_selector import (
    suggest_polling_settings,
    suggest_query_engine,
    suggest_update_engine,
)


class TestQueryEngine:
    """Tests for suggest_query_engine."""

    def test_empty_entity_skips(self):
        choice = suggest_query_engine(0, 0, 3)
        assert choice.skip_api_call

    def test_few_subset_queries_use_rest(self):
        choice = suggest_query_engine(1_000_000, 50, 1)
        assert not choice.skip_api_call
        assert not choice.use_bulk
        assert not choice.query_all

    def test_many_subset_queries_fetch_everything(self):
        choice = suggest_query_engine(50_000, 40_000, 100)
        assert choice.query_all
        assert choice.use_bulk

    def test_subset_larger_than_total_is_clamped(self):
        choice = suggest_query_engine(10, 500, 5)
        assert choice.query_all
        assert not choice.use_bulk

    def test_settings_change_the_outcome(self):
        settings = EngineSettings(rest_max_records_per_call=100_000)
        choice = suggest_query_engine(50_000, 40_000, 100, settings)
        assert choice.query_all
        assert not choice.use_bulk


class TestUpdateEngine:
    """Tests for suggest_update_engine."""

    def test_nothing_to_write(self):
        assert suggest_update_engine(0).skip_api_call

    def test_small_volume_uses_rest(self):
        assert not suggest_update_engine(100).use_bulk

    def test_large_volume_uses_bulk(self):
        assert suggest_update_engine(100_000).use_bulk


class TestPollingSettings:
    """Tests for suggest_polling_settings."""

    def test_defaults_without_count(self):
        settings = EngineSettings()
        choice = suggest_polling_settings(None, settings)
        assert choice.poll_interval == settings.poll_min_interval
        assert choice.poll_timeout == settings.poll_max_timeout

    def test_scales_with_volume(self):
        settings = EngineSettings()
        choice = suggest_polling_settings(250_000, settings)
        assert choice.poll_interval == settings.poll_max_interval
        assert choice.poll_timeout == settings.poll_max_timeout * 3

"""Tests for the consistency gate."""
from dataclasses import replace
from datetime import date
from uuid import uuid4

import pytest

from common.config.settings import GateConfig
from common.models.data_models import RunStatus, StagingRow
from core.stages.consistency_gate import ConsistencyGate, compute_ratio
from core.stages.merge_engine import MergeEngine
from tests.conftest import PRICE_DAY, InMemoryPriceStore


def store_with(entities: int, staged: int) -> InMemoryPriceStore:
    ids = [uuid4() for _ in range(max(entities, staged))]
    store = InMemoryPriceStore(entity_ids=ids[:entities])
    store.replace_staging([[StagingRow(eid, None, None, None, PRICE_DAY) for eid in ids[:staged]]])
    return store


@pytest.mark.parametrize("staged, entities, expected", [
    (95, 100, 0.95),
    (0, 100, 0.0),
    (10, 0, 0.0),
])
def test_compute_ratio(staged, entities, expected):
    """Test the ratio is staged/entities and 0 without entities."""
    assert compute_ratio(staged, entities) == pytest.approx(expected)


def test_ratio_within_bounds_is_allowed(pipeline_config):
    """Test 95 staged rows against 100 entities passes the default bounds."""
    store = store_with(entities=100, staged=95)
    decision = ConsistencyGate(pipeline_config, store).evaluate(PRICE_DAY)

    assert decision.allowed
    assert decision.ratio == pytest.approx(0.95)
    assert store.gating_state.allowed
    assert store.gating_state.as_of_date == PRICE_DAY
    assert store.gating_state.updated_at is not None
    run = store.runs_for('gate')[0]
    assert run.status == RunStatus.COMPLETED
    assert run.ratio == pytest.approx(0.95)
    assert run.rows_staged == 95


def test_ratio_outside_bounds_is_denied(pipeline_config):
    """Test a half-size feed is denied, audited as failed, and blocks the merge."""
    store = store_with(entities=100, staged=50)
    decision = ConsistencyGate(pipeline_config, store).evaluate(PRICE_DAY)

    assert not decision.allowed
    assert decision.ratio == pytest.approx(0.5)
    assert not store.gating_state.allowed

    run = store.runs_for('gate')[0]
    assert run.status == RunStatus.FAILED
    assert run.error_message.startswith('VolumeAnomaly: ')
    assert '0.5000' in run.error_message

    result = MergeEngine(pipeline_config, store).merge(PRICE_DAY)
    assert result.skipped
    assert 'denied' in result.reason
    assert store.runs_for('merge') == []


def test_oversized_feed_is_denied(pipeline_config):
    """Test a ratio above the upper bound is denied."""
    store = store_with(entities=100, staged=111)

    assert not ConsistencyGate(pipeline_config, store).evaluate(PRICE_DAY).allowed


def test_bounds_are_inclusive(pipeline_config):
    """Test ratios exactly on the bounds are allowed."""
    assert ConsistencyGate(pipeline_config, store_with(entities=100, staged=95)).evaluate(PRICE_DAY).allowed
    assert ConsistencyGate(pipeline_config, store_with(entities=100, staged=105)).evaluate(PRICE_DAY).allowed


def test_empty_entity_table_is_denied(pipeline_config):
    """Test no entities means no merge, whatever was staged."""
    store = store_with(entities=0, staged=10)
    decision = ConsistencyGate(pipeline_config, store).evaluate(PRICE_DAY)

    assert not decision.allowed
    assert decision.ratio == 0.0
    assert decision.entity_count == 0


def test_unfiltered_feed_uses_tighter_bounds(pipeline_config):
    """Test the full feed is held to narrower bounds than the paper-only feed."""
    filtered = replace(pipeline_config, converter=replace(pipeline_config.converter, paper_only=True))

    unfiltered_decision = ConsistencyGate(pipeline_config, store_with(entities=100, staged=93)).evaluate(PRICE_DAY)
    filtered_decision = ConsistencyGate(filtered, store_with(entities=100, staged=93)).evaluate(PRICE_DAY)

    assert not unfiltered_decision.allowed
    assert (unfiltered_decision.lower_bound, unfiltered_decision.upper_bound) == (0.95, 1.05)
    assert filtered_decision.allowed
    assert (filtered_decision.lower_bound, filtered_decision.upper_bound) == (0.90, 1.10)


def test_default_bounds_are_tighter_without_filter(monkeypatch):
    """Test the environment defaults narrow the unfiltered range."""
    monkeypatch.delenv('PRICEFEED_GATE_BOUNDS', raising=False)
    monkeypatch.delenv('PRICEFEED_GATE_BOUNDS_FILTERED', raising=False)
    config = GateConfig()

    low, high = config.bounds_for(False)
    filtered_low, filtered_high = config.bounds_for(True)
    assert filtered_low < low <= high < filtered_high


def test_decision_overwrites_previous_day(pipeline_config):
    """Test the gate state is a single row replaced per evaluation."""
    store = store_with(entities=100, staged=100)
    gate = ConsistencyGate(pipeline_config, store)
    gate.evaluate(date(2025, 1, 12))
    gate.evaluate(PRICE_DAY)

    assert store.gating_state.as_of_date == PRICE_DAY
    assert len(store.runs_for('gate')) == 2


def test_dry_run_persists_nothing(pipeline_config):
    """Test a dry run neither writes the gate state nor an audit row."""
    store = store_with(entities=100, staged=95)
    decision = ConsistencyGate(pipeline_config, store).evaluate(PRICE_DAY, dry_run=True)

    assert decision.allowed
    assert decision.dry_run
    assert store.gating_state is None
    assert store.runs == {}


def test_explicit_rows_staged_overrides_table(pipeline_config):
    """Test a caller-supplied staged count is used instead of the staging table."""
    store = store_with(entities=100, staged=0)
    decision = ConsistencyGate(pipeline_config, store).evaluate(PRICE_DAY, dry_run=True, rows_staged=100)

    assert decision.allowed
    assert decision.rows_staged == 100

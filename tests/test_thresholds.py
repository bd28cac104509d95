import json

import numpy as np
import pytest

from urban_timeseries.errors import ConfigError, IssueKind, IssueLog, Policy
from urban_timeseries.thresholds import (
    PATAGONIA_GIDS,
    Period,
    ThresholdTable,
    region_for,
    threshold_layer,
)
from urban_timeseries.types import NODATA_CODE, Options


def test_period_parse_and_contains():
    p = Period.parse("2005-2019")
    assert 2005 in p and 2019 in p
    assert 2004 not in p and 2020 not in p
    assert str(p) == "2005-2019"
    with pytest.raises(ConfigError):
        Period.parse("2005")
    with pytest.raises(ConfigError):
        Period.parse("2019-2005")


@pytest.mark.parametrize("gid,year,expected", [
    (77, 1990, 60),
    (77, 2004, 60),
    (77, 2022, 66),
    (195, 1985, 15),
    (248, 2010, 47),
])
def test_lookup_from_table(gid, year, expected):
    issues = IssueLog()
    lookup = ThresholdTable.default().lookup(gid, year, Options(), issues)
    assert lookup.value == expected
    assert lookup.source == "table"
    assert not lookup.is_fallback
    assert len(issues) == 0


def test_missing_gid_falls_back_to_default():
    issues = IssueLog()
    lookup = ThresholdTable.default().lookup(9999, 2000, Options(), issues)
    assert lookup.value == 50
    assert lookup.is_fallback
    (issue,) = issues.of_kind(IssueKind.MISSING_THRESHOLD)
    assert issue.gid == 9999 and issue.year == 2000
    assert issue.policy is Policy.DEFAULT_THRESHOLD


def test_year_outside_periods_falls_back_to_default():
    issues = IssueLog()
    lookup = ThresholdTable.default().lookup(77, 2030, Options(), issues)
    assert lookup.value == 50
    assert lookup.source == "missing"
    assert len(issues) == 1


def test_degenerate_threshold_replaced():
    table = ThresholdTable({5: {"1985-2024": 97}})
    issues = IssueLog()
    lookup = table.lookup(5, 2000, Options(), issues)
    assert lookup.value == 50
    assert lookup.source == "degenerate"
    assert len(issues.of_kind(IssueKind.DEGENERATE_THRESHOLD)) == 1


def test_custom_default_threshold():
    opts = Options(default_threshold=40)
    assert ThresholdTable({}).lookup(1, 2000, opts).value == 40


def test_out_of_range_threshold_rejected():
    with pytest.raises(ConfigError):
        ThresholdTable({1: {"1985-2024": 120}})


def test_patagonia_excluded_by_default():
    table = ThresholdTable.default()
    default = table.available_gids(include_patagonia=False)
    assert not set(default) & PATAGONIA_GIDS
    assert set(table.available_gids(include_patagonia=True)) >= PATAGONIA_GIDS
    assert region_for(13) == "Patagonia"
    assert region_for(72) == "Cuyo"
    assert region_for(1) == "Unknown"


def test_summary_counts():
    summary = ThresholdTable.default().summary(Options())
    assert summary["configured_gids"] == 28
    assert summary["excluded_gids"] == 11
    assert summary["included_gids"] == 17
    assert summary["years"] == 40
    assert summary["units"] == 17 * 40
    assert "Patagonia" not in summary["regions"]


def test_from_json(tmp_path):
    path = tmp_path / "thr.json"
    path.write_text(json.dumps({"72": {"1985-2004": 44, "2005-2024": 55}}), encoding="utf-8")
    table = ThresholdTable.from_json(path)
    assert table.gids == [72]
    assert table.lookup(72, 2010, Options()).value == 55


@pytest.mark.parametrize("content", ["not json", "[1, 2]", '{"x": {"1985-2024": 50}}', '{"1": {"85-": 50}}'])
def test_from_json_rejects_malformed(tmp_path, content):
    path = tmp_path / "thr.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        ThresholdTable.from_json(path)


def test_threshold_layer_codes():
    prob = np.array([[0, 49.9, 50], [75, np.nan, 100]], dtype=np.float32)
    out = threshold_layer(prob, 50)
    np.testing.assert_array_equal(out, [[0, 0, 1], [1, NODATA_CODE, 1]])
    assert out.dtype == np.uint8

from __future__ import annotations

import pytest

from scrna_report import params


def test_default_params_are_valid():
    assert params.validate_params() is True


def test_summary_mentions_filters_and_methods():
    summary = params.get_settings_summary()
    assert "Genes per cell" in summary
    for method in params.NORMALIZATION_PARAMS["methods"]:
        assert method in summary


def test_validation_collects_every_error(monkeypatch):
    monkeypatch.setitem(params.CELL_FILTERS, "min_genes", 10_000)
    monkeypatch.setitem(params.STABILITY_PARAMS, "fraction", 1.5)
    with pytest.raises(ValueError) as excinfo:
        params.validate_params()
    message = str(excinfo.value)
    assert "min_genes must be less than max_genes" in message
    assert "stability fraction" in message


def test_empty_method_list_rejected(monkeypatch):
    monkeypatch.setitem(params.NORMALIZATION_PARAMS, "methods", [])
    with pytest.raises(ValueError, match="normalization method"):
        params.validate_params()

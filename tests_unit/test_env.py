"""Unit tests for environment helpers."""

import pytest

from attribution_engine.utils.env import require_env


def test_require_env_returns_value(monkeypatch) -> None:
    monkeypatch.setenv("ATTRIBUTION_TEST_VALUE", "postgresql://db/attribution")

    assert require_env("ATTRIBUTION_TEST_VALUE") == "postgresql://db/attribution"


@pytest.mark.parametrize("value", [None, ""])
def test_require_env_fails_fast_when_missing(monkeypatch, value) -> None:
    if value is None:
        monkeypatch.delenv("ATTRIBUTION_TEST_VALUE", raising=False)
    else:
        monkeypatch.setenv("ATTRIBUTION_TEST_VALUE", value)

    with pytest.raises(RuntimeError, match="ATTRIBUTION_TEST_VALUE"):
        require_env("ATTRIBUTION_TEST_VALUE")

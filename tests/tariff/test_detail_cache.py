from pathlib import Path

import pytest

from landedcost.tariff.detail_cache import DetailCache


def test_cache_roundtrip_and_expiry(tmp_path: Path):
    cache = DetailCache(tmp_path / "cache.db", ttl_days=1)
    cache.set("detail:8704.21.00", {"code": "8704.21.00", "rates": {"vat": 21}}, now=1_000)

    assert cache.get("detail:8704.21.00", now=1_000 + 3600) == {"code": "8704.21.00", "rates": {"vat": 21}}
    assert cache.get("detail:8704.21.00", now=1_000 + 86_400 + 1) is None
    # expired rows are removed, not just hidden
    assert cache.get("detail:8704.21.00", now=1_000) is None
    cache.close()


def test_cache_overwrite_resets_age(tmp_path: Path):
    cache = DetailCache(tmp_path / "cache.db", ttl_days=1)
    cache.set("k", {"v": 1}, now=0)
    cache.set("k", {"v": 2}, now=80_000)
    assert cache.get("k", now=100_000) == {"v": 2}
    cache.close()


def test_rejects_unsafe_table_name(tmp_path: Path):
    with pytest.raises(ValueError):
        DetailCache(tmp_path / "cache.db", table="x; DROP TABLE y")

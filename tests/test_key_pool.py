import pytest

from docspeech.services.key_pool import KeyPool, key_fingerprint, parse_api_keys


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_parse_api_keys_dedups_and_skips_blanks() -> None:
    assert parse_api_keys("a, b\nc,,a\r\n") == ["a", "b", "c"]
    assert parse_api_keys(None) == []


def test_key_fingerprint_hides_key() -> None:
    assert key_fingerprint("short") == "***"
    assert key_fingerprint("AIzaSyABCDEFGHIJKLMN") == "AIzaSyAB***KLMN"


def test_empty_pool_rejected() -> None:
    with pytest.raises(ValueError):
        KeyPool([])


def test_rotation_is_cyclic() -> None:
    pool = KeyPool(["k1", "k2", "k3"])
    seen = []
    for _ in range(3):
        seen.append(pool.current()[0])
        pool.rotate()
    assert seen == [0, 1, 2]
    assert pool.current() == (0, "k1")


def test_acquire_skips_cooling_key() -> None:
    clock = FakeClock()
    pool = KeyPool(["k1", "k2"], cooldown_seconds=600, clock=clock)
    pool.mark_failed(0)
    assert pool.acquire() == (1, "k2")

    clock.now += 601
    assert not pool.is_cooling_down(0)


def test_acquire_uses_a_key_when_all_are_cooling() -> None:
    pool = KeyPool(["k1", "k2"], clock=FakeClock())
    pool.mark_failed(0)
    pool.mark_failed(1)
    index, key = pool.acquire()
    assert (index, key) in [(0, "k1"), (1, "k2")]


def test_single_key_is_used_even_when_cooling() -> None:
    pool = KeyPool(["only"], clock=FakeClock())
    pool.mark_failed(0)
    assert pool.acquire() == (0, "only")


def test_usage_counts_current_hour_only() -> None:
    clock = FakeClock()
    pool = KeyPool(["k1"], clock=clock)
    assert pool.record_usage(0) == 1
    assert pool.record_usage(0) == 2

    clock.now += 7200
    assert pool.usage(0) == 0
    assert pool.record_usage(0) == 1


def test_snapshot_has_no_key_material() -> None:
    pool = KeyPool(["AIzaSyABCDEFGHIJKLMN", "AIzaSyZYXWVUTSRQPONM"], clock=FakeClock())
    pool.record_usage(1)
    snapshot = pool.snapshot()
    assert [entry["current"] for entry in snapshot] == [True, False]
    assert snapshot[1]["usage_this_hour"] == 1
    assert "AIzaSyABCDEFGHIJKLMN" not in repr(snapshot)

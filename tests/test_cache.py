from guided_trading.cache import TtlCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = TtlCache(ttl_seconds=30, clock=clock)
    cache.put("KRW-BTC", 1)
    clock.now = 29.9
    assert cache.get("KRW-BTC") == 1
    clock.now = 30.0
    assert cache.get("KRW-BTC") is None
    assert len(cache) == 0


def test_get_or_load_calls_loader_once():
    cache = TtlCache(ttl_seconds=30, clock=FakeClock())
    calls = []

    def loader():
        calls.append(1)
        return "value"

    assert cache.get_or_load("k", loader) == "value"
    assert cache.get_or_load("k", loader) == "value"
    assert len(calls) == 1


def test_none_is_not_cached():
    cache = TtlCache(ttl_seconds=30, clock=FakeClock())
    calls = []

    def loader():
        calls.append(1)
        return None

    cache.get_or_load("k", loader)
    cache.get_or_load("k", loader)
    assert len(calls) == 2


def test_invalidate():
    cache = TtlCache(ttl_seconds=30, clock=FakeClock())
    cache.put("a", 1)
    cache.put("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.invalidate()
    assert len(cache) == 0

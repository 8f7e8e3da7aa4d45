from backend.app.security.rate_limit import UploadRateLimiter
from backend.app.security.sanitization import sanitize_name, sanitize_phone


class Ticker:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_limit_resets_after_window():
    clock = Ticker()
    limiter = UploadRateLimiter(max_requests=2, window_seconds=60, clock=clock)
    assert limiter.hit('1.2.3.4') is None
    clock.t += 10
    assert limiter.hit('1.2.3.4') is None
    clock.t += 10
    assert limiter.hit('1.2.3.4') == 40  # first hit leaves the window in 40s
    clock.t += 41
    assert limiter.hit('1.2.3.4') is None


def test_client_table_is_bounded():
    clock = Ticker()
    limiter = UploadRateLimiter(max_requests=5, window_seconds=60, max_clients=3, clock=clock)
    for n in range(10):
        limiter.hit(f'10.0.0.{n}')
    assert limiter.client_count() == 3
    clock.t += 61
    limiter.hit('10.0.0.99')
    assert limiter.client_count() == 1


def test_zero_disables_the_limit():
    limiter = UploadRateLimiter(max_requests=0, window_seconds=60)
    assert all(limiter.hit('1.2.3.4') is None for _ in range(50))
    assert limiter.client_count() == 0


def test_sanitize_keeps_names_in_any_script():
    assert sanitize_name('  José   María ') == 'José María'
    assert sanitize_name("-'Anne-Marie'-") == 'Anne-Marie'
    assert sanitize_name('<script>') == 'script'
    assert sanitize_phone(' +44  (20) 7946-0958 x ') == '+44 (20) 7946-0958'

from types import SimpleNamespace

from site_organizer.write_safety import (
    MAX_IMPORT_SIZE_BYTES,
    RateLimiter,
    get_client_ip,
    validate_import_file,
    validate_import_rows,
)


def test_rate_limiter_blocks_after_max() -> None:
    limiter = RateLimiter(max_requests=2, window_seconds=60)
    assert limiter.is_allowed("1.2.3.4")
    assert limiter.is_allowed("1.2.3.4")
    assert not limiter.is_allowed("1.2.3.4")
    assert limiter.is_allowed("5.6.7.8")

    limiter.reset()
    assert limiter.is_allowed("1.2.3.4")


def test_validate_import_file() -> None:
    assert validate_import_file("bookmarks.HTML", 100) == (True, None)
    ok, error = validate_import_file("sites.xlsx", 100)
    assert not ok and "Unsupported" in error
    ok, error = validate_import_file("sites.csv", MAX_IMPORT_SIZE_BYTES + 1)
    assert not ok and "too large" in error


def test_validate_import_rows() -> None:
    assert validate_import_rows(5000) == (True, None)
    assert validate_import_rows(5001)[0] is False


def test_client_ip_prefers_forwarded_header() -> None:
    forwarded = SimpleNamespace(headers={"x-forwarded-for": "9.9.9.9, 10.0.0.1"}, client=None)
    direct = SimpleNamespace(headers={}, client=SimpleNamespace(host="127.0.0.1"))
    assert get_client_ip(forwarded) == "9.9.9.9"
    assert get_client_ip(direct) == "127.0.0.1"
    assert get_client_ip(SimpleNamespace(headers={}, client=None)) == "unknown"

import requests

from site_organizer.link_check import check_sites, check_url


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code

    def close(self):
        pass


class FakeSession:
    """Scripted responses keyed by (method, url); records every call."""

    def __init__(self, script):
        self.script = script
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs.get("headers", {}).get("Cache-Control")))
        outcome = self.script[(method, url)].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)

    def head(self, url, **kwargs):
        return self._next("HEAD", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)


def test_head_ok() -> None:
    session = FakeSession({("HEAD", "https://ok.example"): [200]})
    assert check_url("https://ok.example", session)["ok"] is True
    assert len(session.calls) == 1


def test_head_rejected_falls_back_to_get() -> None:
    session = FakeSession({
        ("HEAD", "https://nohead.example"): [405],
        ("GET", "https://nohead.example"): [200],
    })
    result = check_url("https://nohead.example", session)
    assert result == {"url": "https://nohead.example", "ok": True, "status": 200, "error": None}


def test_forbidden_retries_without_cache() -> None:
    session = FakeSession({
        ("HEAD", "https://cdn.example"): [403],
        ("GET", "https://cdn.example"): [403, 200],
    })
    assert check_url("https://cdn.example", session)["ok"] is True
    assert session.calls[-1] == ("GET", "https://cdn.example", "no-cache")


def test_timeout_then_success_on_longer_retry() -> None:
    session = FakeSession({
        ("HEAD", "https://slow.example"): [requests.Timeout("read timed out"), 200],
    })
    assert check_url("https://slow.example", session)["ok"] is True


def test_check_sites_reports_broken() -> None:
    session = FakeSession({
        ("HEAD", "https://ok.example"): [200],
        ("HEAD", "https://gone.example"): [404, 404],
        ("GET", "https://gone.example"): [404, 404],
    })
    report = check_sites(
        [
            {"id": "s1", "name": "OK", "url": "https://ok.example"},
            {"id": "s2", "name": "Gone", "url": "https://gone.example"},
        ],
        session=session,
    )
    assert report["total"] == 2
    assert report["brokenCount"] == 1
    assert report["broken"][0]["id"] == "s2"
    assert report["broken"][0]["status"] == 404


class ClosingSession(FakeSession):
    instances = []

    def __init__(self):
        super().__init__({
            ("HEAD", "https://ok.example"): [200, 200],
        })
        self.closed = False
        ClosingSession.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True


def test_own_session_is_closed(monkeypatch) -> None:
    ClosingSession.instances = []
    monkeypatch.setattr("site_organizer.link_check.requests.Session", ClosingSession)

    assert check_url("https://ok.example")["ok"] is True
    report = check_sites([{"id": "s1", "name": "OK", "url": "https://ok.example"}])
    assert report["brokenCount"] == 0

    assert len(ClosingSession.instances) == 2
    assert all(s.closed for s in ClosingSession.instances)

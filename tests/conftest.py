from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from site_localizer import Fetcher, Settings


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; unknown URLs answer 404."""

    def __init__(self):
        self.routes: Dict[str, Union[FakeResponse, Exception]] = {}
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}

    def add(self, url: str, content: bytes = b"", status: int = 200, headers: Optional[Dict[str, str]] = None) -> None:
        self.routes[url] = FakeResponse(status, content, headers)

    def redirect(self, url: str, location: str, status: int = 302) -> None:
        self.routes[url] = FakeResponse(status, b"", {"Location": location})

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def get(self, url, timeout=None, allow_redirects=True, **kwargs):
        self.calls.append(url)
        r = self.routes.get(url)
        if r is None:
            return FakeResponse(404)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fetcher(session) -> Fetcher:
    return Fetcher(session, timeout=1.0, max_redirects=5)


@pytest.fixture
def site(tmp_path) -> Path:
    root = tmp_path / "site"
    root.mkdir()
    return root


@pytest.fixture
def make_settings(site):
    def make(**kw) -> Settings:
        data = {"origin": "https://example.org", "root": str(site)}
        data.update(kw)
        return Settings.from_mapping(data, environ={})

    return make


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path

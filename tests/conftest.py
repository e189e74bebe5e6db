"""
Shared fixtures for the lilroot test-suite.

- Isolates the YAML configuration from the developer's home directory
- Builds small gzip layer archives on demand
- Provides dummy HTTP responses/sessions in place of ``requests``
"""

import io
import tarfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pytest
import requests

from lilroot.modules import config


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.delenv("LILROOT_CONFIG", raising=False)
    monkeypatch.setattr(config, "USER_CONFIG", str(tmp_path / "home" / "config.yml"))
    monkeypatch.setattr(config, "SYSTEM_CONFIG", str(tmp_path / "etc" / "config.yml"))
    config.load_config()
    yield
    config.load_config()


def write_archive(path: Path, files: Dict[str, Union[bytes, str]]) -> Path:
    """Write a .tar.gz at path with the given relative file contents."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def archive_factory(tmp_path):
    def _make(name: str, files: Dict[str, Union[bytes, str]], directory: Optional[Path] = None) -> Path:
        return write_archive((directory or tmp_path / "archives") / name, files)

    return _make


@pytest.fixture
def layout(tmp_path) -> Dict[str, str]:
    dirs = {
        "rootfs_dir": tmp_path / "rootfs",
        "assets_dir": tmp_path / "assets",
        "cache_dir": tmp_path / "cache",
        "lib_dir": tmp_path / "lib",
        "native_lib_dir": tmp_path / "native",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    (dirs["native_lib_dir"] / "libproot.so").write_bytes(b"\x7fELF")
    (dirs["native_lib_dir"] / "libtalloc.so").write_bytes(b"\x7fELF")
    return {k: str(v) for k, v in dirs.items()}


class DummyResponse:
    def __init__(
        self,
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
        chunks: Iterable[Union[bytes, Exception]] = (),
        json_data: Any = None,
        json_error: Optional[Exception] = None,
    ) -> None:
        self.status_code = status_code
        self.headers: Dict[str, str] = dict(headers or {})
        self._chunks = list(chunks)
        self._json = json_data
        self._json_error = json_error
        self.closed = False

    def iter_content(self, chunk_size: int):
        for chunk in self._chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def json(self):
        if self._json_error is not None:
            raise self._json_error
        return self._json

    def close(self) -> None:
        self.closed = True


class DummySession:
    """Returns queued responses (or raises queued exceptions) and records every call."""

    def __init__(self, *responses: Union[DummyResponse, Exception]) -> None:
        self._responses: List[Union[DummyResponse, Exception]] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> DummyResponse:
        self.calls.append({"url": url, **kwargs})
        if not self._responses:
            raise requests.ConnectionError(f"no response queued for {url}")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class ForbiddenSession:
    """Fails the test if any HTTP request is attempted."""

    def get(self, url: str, **kwargs: Any):  # pragma: no cover - must never run
        raise AssertionError(f"unexpected network access: {url}")

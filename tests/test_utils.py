"""
Download and Extraction Tests

Covers the overlay contract of the archive extractor (with and without the
system ``tar``) and the manual-redirect downloader's progress reporting.
"""

import pytest
import requests

from conftest import DummyResponse, DummySession
from lilroot.modules import utils
from lilroot.modules.errors import DownloadError, ErrorKind, ExtractionError


@pytest.fixture(params=["system-tar", "tarfile"])
def extractor_mode(request, monkeypatch):
    if request.param == "tarfile":
        monkeypatch.setattr(utils.shutil, "which", lambda name: None)
    elif utils.shutil.which("tar") is None:
        pytest.skip("tar not available on PATH")
    return request.param


def test_later_archive_overlays_earlier(tmp_path, archive_factory, extractor_mode):
    target = tmp_path / "root"
    first = archive_factory("first.tar.gz", {"etc/keep.txt": "one", "etc/shared.txt": "from-first"})
    second = archive_factory("second.tar.gz", {"etc/shared.txt": "from-second", "usr/new.txt": "new"})

    utils.extract_tarball(str(first), str(target))
    utils.extract_tarball(str(second), str(target))

    assert (target / "etc/keep.txt").read_text() == "one"
    assert (target / "etc/shared.txt").read_text() == "from-second"
    assert (target / "usr/new.txt").read_text() == "new"


def test_corrupt_archive_raises_extraction_error(tmp_path, extractor_mode):
    bad = tmp_path / "bad.tar.gz"
    bad.write_bytes(b"this is not gzip data")

    with pytest.raises(ExtractionError) as excinfo:
        utils.extract_tarball(str(bad), str(tmp_path / "root"))
    assert excinfo.value.kind is ErrorKind.LAYER


def test_download_follows_redirect_and_reports_progress(tmp_path):
    session = DummySession(
        DummyResponse(302, {"Location": "https://cdn.example.org/blob"}),
        DummyResponse(200, {"Content-Length": "6"}, chunks=[b"abc", b"def"]),
    )
    seen = []
    dest = tmp_path / "out" / "layer.tar.gz"

    written = utils.download("https://github.example.org/layer.tar.gz", str(dest),
                             on_progress=seen.append, session=session)

    assert written == 6
    assert dest.read_bytes() == b"abcdef"
    assert [c["url"] for c in session.calls] == [
        "https://github.example.org/layer.tar.gz",
        "https://cdn.example.org/blob",
    ]
    assert all(c["allow_redirects"] is False for c in session.calls)
    assert seen == [0.5, 1.0, 1.0]


def test_relative_location_is_resolved(tmp_path):
    session = DummySession(
        DummyResponse(307, {"Location": "/mirror/layer.tar.gz"}),
        DummyResponse(200, chunks=[b"x"]),
    )
    utils.download("https://example.org/a/layer.tar.gz", str(tmp_path / "l.tgz"), session=session)
    assert session.calls[1]["url"] == "https://example.org/mirror/layer.tar.gz"


def test_declared_size_used_without_content_length(tmp_path):
    session = DummySession(DummyResponse(200, chunks=[b"ab", b"cd"]))
    seen = []
    utils.download("https://example.org/l", str(tmp_path / "l"), on_progress=seen.append,
                   session=session, expected_size=8)
    assert seen == [0.25, 0.5, 1.0]


def test_final_progress_is_one_for_fully_streamed_body(tmp_path):
    # Content-Length smaller than the body: fractions are capped, last call is 1.0
    session = DummySession(DummyResponse(200, {"Content-Length": "2"}, chunks=[b"abc", b"def"]))
    seen = []
    utils.download("https://example.org/l", str(tmp_path / "l"), on_progress=seen.append, session=session)
    assert max(seen) == 1.0
    assert seen[-1] == 1.0


def test_too_many_redirects(tmp_path):
    session = DummySession(*[DummyResponse(302, {"Location": f"https://example.org/{i}"}) for i in range(6)])
    with pytest.raises(DownloadError, match="redirects"):
        utils.download("https://example.org/start", str(tmp_path / "l"), session=session)
    assert len(session.calls) == 6


def test_http_error_status(tmp_path):
    session = DummySession(DummyResponse(404))
    with pytest.raises(DownloadError) as excinfo:
        utils.download("https://example.org/missing", str(tmp_path / "l"), session=session)
    assert excinfo.value.status_code == 404


def test_connection_error_becomes_download_error(tmp_path):
    session = DummySession(requests.ConnectionError("offline"))
    with pytest.raises(DownloadError):
        utils.download("https://example.org/l", str(tmp_path / "l"), session=session)


@pytest.mark.parametrize(
    "size, expected",
    [(42_713_180, "40 MB"), (250_034, "244 KB"), (2_815, "2 KB"), (512, "512 B")],
)
def test_format_size(size, expected):
    assert utils.format_size(size) == expected

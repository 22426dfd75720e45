import asyncio

import aiohttp

from common import constants
from server.attachments import AttachmentFetcher, bucket, human_size, link_for
from server.models import Attachment, StageStatus

from conftest import FakeResponse, FakeSession

MB = constants.MB


def att(name, size, aid=1):
    return Attachment(aid, name, f"https://cdn/{name}", size=size)


def test_bucket_respects_item_batch_and_count_ceilings():
    items = [att("big.png", 9 * MB), att("a.bin", 4 * MB), att("b.bin", 4 * MB), att("c.txt", 10)]
    plan = bucket(items)
    assert [a.filename for a in plan.uploads] == ["a.bin", "c.txt"]
    assert [a.filename for a in plan.links] == ["big.png", "b.bin"]

    many = [att(f"{i}.txt", 1, aid=i) for i in range(12)]
    plan = bucket(many)
    assert len(plan.uploads) == constants.FILES_PER_MESSAGE
    assert len(plan.links) == 2


def test_link_has_size_annotation():
    assert human_size(9 * MB) == "9.0 MB"
    assert link_for(att("big.png", 9 * MB)) == "📎 [big.png](https://cdn/big.png) (9.0 MB)"


def test_oversized_image_becomes_link_without_download():
    session = FakeSession({})
    fetcher = AttachmentFetcher(session)
    out = asyncio.run(fetcher.prepare([att("photo.jpg", 9 * MB)]))
    assert out.status is StageStatus.DEGRADED
    assert out.value.files == []
    assert out.value.link_lines == ["📎 [photo.jpg](https://cdn/photo.jpg) (9.0 MB)"]
    assert session.requested == []


def test_small_files_are_downloaded():
    session = FakeSession({"https://cdn/a.txt": [FakeResponse(body=b"hello")]})
    out = asyncio.run(AttachmentFetcher(session).prepare([att("a.txt", 5)]))
    assert out.status is StageStatus.SUCCESS
    assert out.value.files[0].data == b"hello"
    assert out.value.total_bytes == 5


def test_transient_download_error_is_retried():
    session = FakeSession(
        {"https://cdn/a.txt": [aiohttp.ClientConnectionError("reset"), FakeResponse(body=b"ok")]}
    )
    fetcher = AttachmentFetcher(session, base_delay=0)
    out = asyncio.run(fetcher.prepare([att("a.txt", 2)]))
    assert out.status is StageStatus.SUCCESS
    assert len(session.requested) == 2


def test_failed_download_links_the_whole_batch():
    session = FakeSession(
        {
            "https://cdn/a.txt": [FakeResponse(body=b"a")],
            "https://cdn/b.txt": [FakeResponse(status=403, reason="Forbidden")],
        }
    )
    out = asyncio.run(AttachmentFetcher(session).prepare([att("a.txt", 1), att("b.txt", 1, aid=2)]))
    assert out.status is StageStatus.DEGRADED
    assert out.value.files == []
    assert {a.filename for a in out.value.links} == {"a.txt", "b.txt"}


def test_declared_size_is_not_trusted():
    session = FakeSession({"https://cdn/a.bin": [FakeResponse(body=b"x" * 2048)]})
    fetcher = AttachmentFetcher(session, per_item=1024)
    out = asyncio.run(fetcher.prepare([att("a.bin", 10)]))
    assert out.value.files == []
    assert [a.filename for a in out.value.links] == ["a.bin"]

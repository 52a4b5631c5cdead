"""
Tests for app.services.object_storage and app.services.media_providers
"""

import re

import pytest

from app.services.media_providers import MockImageProvider, MockVideoProvider
from app.services.object_storage import PUBLIC_PREFIX, LocalObjectStorage, extension_for_mime


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "assets")


class TestLocalObjectStorage:
    """Local asset storage and public URL mapping."""

    async def test_save_layout(self, storage):
        url = await storage.save(b"<svg/>", "image/svg+xml", "idea-1")
        assert re.fullmatch(rf"{PUBLIC_PREFIX}/\d{{4}}-\d{{2}}-\d{{2}}/idea-1/[0-9a-f-]{{36}}\.svg", url)

        path = storage.resolve_public_url(url)
        assert path is not None
        assert path.read_bytes() == b"<svg/>"

    async def test_remove(self, storage):
        url = await storage.save(b"data", "video/mp4", "idea-1")
        assert await storage.remove_by_public_url(url) is True
        assert not storage.resolve_public_url(url).exists()
        assert await storage.remove_by_public_url(url) is False

    @pytest.mark.parametrize(
        "url",
        [
            "/storage/assets/../secrets.txt",
            "/storage/assets/2024-01-01/%2e%2e/%2e%2e/etc/passwd",
            "/storage/assets/2024-01-01//x.png",
            "/storage/assets/..\\..\\x.png",
            "/storage/assets/a/b%00.png",
            "/storage/assets/",
            "/other/2024-01-01/x.png",
            "https://cdn.example.com/storage/assets/x.png",
        ],
    )
    def test_traversal_and_foreign_urls_rejected(self, storage, url):
        assert storage.resolve_public_url(url) is None

    def test_query_and_fragment_ignored(self, storage):
        path = storage.resolve_public_url("/storage/assets/2024-01-01/idea/x.png?v=2#top")
        assert path == storage.root / "2024-01-01" / "idea" / "x.png"

    async def test_refuses_to_remove_outside_root(self, storage, tmp_path):
        outside = tmp_path / "keep.txt"
        outside.write_text("keep")
        assert await storage.remove_by_public_url("/storage/assets/../keep.txt") is False
        assert outside.exists()

    def test_extension_for_mime(self):
        assert extension_for_mime("image/png") == "png"
        assert extension_for_mime("IMAGE/JPEG; charset=binary") == "jpg"
        assert extension_for_mime("application/zip") == "bin"
        assert extension_for_mime(None) == "bin"


class TestMockMediaProviders:
    async def test_image_escapes_prompt(self):
        image = await MockImageProvider().generate_image('<b>"sunset"</b> & sea')
        svg = image.data.decode("utf-8")
        assert image.mime == "image/svg+xml"
        assert (image.width, image.height) == (1080, 1920)
        assert "&lt;b&gt;&quot;sunset&quot;&lt;/b&gt; &amp; sea" in svg
        assert "<b>" not in svg

    async def test_video_uses_sample_url(self, make_settings):
        settings = make_settings(video_sample_url="https://cdn.example.com/clip.mp4")
        video = await MockVideoProvider(settings).generate_video("a prompt")
        assert video.url == "https://cdn.example.com/clip.mp4"
        assert video.mime == "video/mp4"
        assert video.duration == 5

"""
Image and video generation providers.

Only mock implementations ship: the image mock renders the prompt into an SVG
poster, the video mock returns a sample clip URL. Real backends implement the
same ABCs.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from xml.sax.saxutils import escape

from app.settings import Settings, get_settings

IMAGE_WIDTH = 1080
IMAGE_HEIGHT = 1920
MAX_SVG_PROMPT_CHARS = 220


@dataclass
class GeneratedImage:
    data: bytes
    mime: str
    width: int
    height: int


@dataclass
class GeneratedVideo:
    url: str
    mime: str
    width: int
    height: int
    duration: int


class ImageProvider(ABC):
    name: str
    model: str

    @abstractmethod
    async def generate_image(self, prompt: str) -> GeneratedImage:
        ...


class VideoProvider(ABC):
    name: str
    model: str

    @abstractmethod
    async def generate_video(self, prompt: str) -> GeneratedVideo:
        ...


class MockImageProvider(ImageProvider):
    name = "mock-image-provider"
    model = "mock-image-v1"

    async def generate_image(self, prompt: str) -> GeneratedImage:
        text = escape(prompt.strip()[:MAX_SVG_PROMPT_CHARS], {'"': "&quot;"})
        svg = (
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{IMAGE_WIDTH}" height="{IMAGE_HEIGHT}" '
            f'viewBox="0 0 {IMAGE_WIDTH} {IMAGE_HEIGHT}">'
            '<rect width="100%" height="100%" fill="#1f2937"/>'
            '<foreignObject x="80" y="160" width="920" height="1600">'
            '<div xmlns="http://www.w3.org/1999/xhtml" '
            'style="color:#f9fafb;font-family:sans-serif;font-size:48px;line-height:1.3">'
            f"{text}</div></foreignObject></svg>"
        )
        return GeneratedImage(data=svg.encode("utf-8"), mime="image/svg+xml", width=IMAGE_WIDTH, height=IMAGE_HEIGHT)


class MockVideoProvider(VideoProvider):
    name = "mock-video-provider"
    model = "mock-video-v1"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def generate_video(self, prompt: str) -> GeneratedVideo:
        return GeneratedVideo(
            url=self.settings.video_sample_url,
            mime="video/mp4",
            width=IMAGE_WIDTH,
            height=IMAGE_HEIGHT,
            duration=5,
        )

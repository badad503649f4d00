"""Shared pytest fixtures: API client and a fake Bilibili upstream."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from bilinote.config import Settings
from bilinote.main import app, limiter

TEST_BVID = "BV1GJ411x7h7"
TEST_TITLE = "费曼的学习心智模型"
ZH_TRACK_URL = "//aisubtitle.hdslb.com/bfs/subtitle/zh.json"
AI_TRACK_URL = "//aisubtitle.hdslb.com/bfs/ai_subtitle/prod/ai.json"

MATCHING_LINES = [
    "今天我们来聊聊费曼的学习方法",
    "费曼的学习心智模型其实很简单",
    "第一步是选择一个你想理解的概念",
    "第二步是尝试把它讲给一个孩子听",
    "第三步是找到讲不清楚的地方回去重新学习",
]

# Transcript of an unrelated esports stream
MISMATCHED_LINES = [
    "欢迎来到今天的英雄联盟比赛直播",
    "WBG和LNG的选手已经准备就绪",
    "解说认为这场比赛非常关键",
    "双方战队都拿出了自己的最强阵容",
    "让我们期待一场精彩的对决",
]


def subtitle_payload(lines: list[str]) -> dict:
    """Subtitle file JSON in the upstream ``body`` format."""
    return {
        "font_size": 0.4,
        "body": [
            {"from": float(i), "to": float(i + 1), "location": 2, "content": line}
            for i, line in enumerate(lines)
        ],
    }


def https(url: str) -> str:
    return f"https:{url}"


class FakeBilibili:
    """
    In-memory stand-in for the Bilibili endpoints, served through
    ``httpx.MockTransport``.

    ``subtitles`` maps absolute subtitle URLs to a list of payloads; each
    download consumes one payload and the last one repeats. A payload may be
    a dict (served as JSON), a str (served as text) or an int (HTTP status).
    """

    def __init__(
        self,
        bvid: str = TEST_BVID,
        title: str = TEST_TITLE,
        description: str = "",
        cid: int | None = 123456,
        tracks: list[dict] | None = None,
        ai_subtitle: dict | None = None,
        player_so: str = "<root></root>",
        subtitles: dict[str, list] | None = None,
        video_info_code: int = 0,
        status_overrides: dict[str, int] | None = None,
    ):
        self.bvid = bvid
        self.title = title
        self.description = description
        self.cid = cid
        self.tracks = tracks if tracks is not None else [
            {"id": 1, "id_str": "1", "lan": "zh-CN", "lan_doc": "中文（中国）", "subtitle_url": ZH_TRACK_URL}
        ]
        self.ai_subtitle = ai_subtitle
        self.player_so = player_so
        self.subtitles = subtitles if subtitles is not None else {
            https(ZH_TRACK_URL): [subtitle_payload(MATCHING_LINES)]
        }
        self.video_info_code = video_info_code
        self.status_overrides = status_overrides or {}
        self.requests: list[httpx.Request] = []

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def count(self, path: str) -> int:
        return self.paths().count(path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path])

        if request.url.host == "b23.tv":
            return httpx.Response(
                302, headers={"Location": f"https://www.bilibili.com/video/{self.bvid}?share_source=copy"}
            )
        if request.url.host == "www.bilibili.com":
            return httpx.Response(200, text="<html></html>")

        if path == "/x/web-interface/view":
            if self.video_info_code != 0:
                return httpx.Response(200, json={"code": self.video_info_code, "message": "啥都木有"})
            data = {"bvid": self.bvid, "title": self.title, "desc": self.description}
            if self.cid is not None:
                data["cid"] = self.cid
            return httpx.Response(200, json={"code": 0, "message": "0", "data": data})

        if path == "/x/player/v2":
            subtitle = {"subtitles": self.tracks}
            if self.ai_subtitle is not None:
                subtitle["ai_subtitle"] = self.ai_subtitle
            return httpx.Response(200, json={"code": 0, "data": {"subtitle": subtitle}})

        if path == "/x/player.so":
            return httpx.Response(200, text=self.player_so)

        queue = self.subtitles.get(str(request.url))
        if queue is None:
            return httpx.Response(404)
        payload = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(payload, int):
            return httpx.Response(payload)
        if isinstance(payload, str):
            return httpx.Response(200, text=payload)
        return httpx.Response(200, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def test_settings():
    """Settings isolated from env files, with a session cookie configured."""
    return Settings(_env_file=None, bilibili_cookie="SESSDATA=test-session")


@pytest.fixture
def fake_bilibili():
    return FakeBilibili()


@pytest.fixture
def no_backoff():
    """Replace the retry wait so tests do not sleep."""
    with patch("bilinote.service.backoff_sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture
def client():
    """FastAPI TestClient with rate limiting disabled."""
    enabled = limiter.enabled
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        limiter.enabled = enabled

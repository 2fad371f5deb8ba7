"""Shared builders for provider replies and test images."""

import io
import json

import httpx
from PIL import Image

READINGS_JSON = json.dumps({
    "startReading": {"date": "2024-01-01 00:00", "value": 694957.7},
    "endReading": {"date": "2024-02-01 00:00", "value": 705310.2},
})


def gemini_reply(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}


def gemini_error(code: int, status: str, message: str) -> dict:
    return {"error": {"code": code, "status": status, "message": message}}


def make_image(size=(1600, 900), mode="RGB", fmt="PNG") -> bytes:
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def scripted(responses):
    """Handler replaying (status, body) pairs in order and recording requests.

    The last pair repeats once the script runs out.
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        status, body = responses[min(len(calls), len(responses)) - 1]
        return httpx.Response(status, json=body)

    handler.calls = calls
    return handler

"""
Test helpers: a scriptable in-process recognition oracle and tiny
generated documents.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

import fitz

from sheetscan.models import WorkItem

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 16


@dataclass
class OracleCall:
    image: bytes
    mime_type: str
    prompt: str
    schema: dict


class FakeOracle:
    """
    In-process oracle. ``responder`` maps each call to a payload dict, a
    JSON string, or an exception instance to raise.
    """

    def __init__(
        self,
        responder: Optional[Callable[[OracleCall], Any]] = None,
        delay: float = 0.0,
    ):
        self.responder = responder or (lambda call: {})
        self.delay = delay
        self.calls: list[OracleCall] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, *, image, mime_type, prompt, schema) -> str:
        call = OracleCall(image, mime_type, prompt, schema)
        self.calls.append(call)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.responder(call)
            if isinstance(result, BaseException):
                raise result
            return result if isinstance(result, str) else json.dumps(result)
        finally:
            self.in_flight -= 1


def scripted(*results: Any) -> Callable[[OracleCall], Any]:
    """Responder returning ``results`` in order, one per call."""
    queue = list(results)
    return lambda call: queue.pop(0)


def counter_ids(prefix: str = "g") -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


def make_pdf(pages: int) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=200, height=200)
        page.insert_text((20, 50), f"Sheet page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def work_item(name: str = "sheet.jpg", **overrides) -> WorkItem:
    values = {"image_data": JPEG_BYTES, "source_file_name": name}
    values.update(overrides)
    return WorkItem(**values)



from __future__ import annotations

import pytest

from helpers import simple_epub


@pytest.fixture
def three_chapter_epub() -> bytes:
    return simple_epub(
        {
            "c1": "<h1>One</h1><p>First chapter.</p>",
            "c2": "<h1>Two</h1><p>Second chapter.</p>",
            "c3": "<h1>Three</h1><p>Third chapter.</p>",
        }
    )

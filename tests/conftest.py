"""Shared pytest fixtures for prompt_dispatch tests."""

import os
import pytest


@pytest.fixture
def clean_env(monkeypatch):
    """Remove provider key env vars so tests start from a known state."""
    for key in list(os.environ.keys()):
        if key.startswith(("OPENAI_", "ANTHROPIC_", "GEMINI_", "LLM_")):
            monkeypatch.delenv(key, raising=False)

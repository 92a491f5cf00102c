"""Shared fixtures: a scripted model client and a workspace config (no network)."""

import json
from typing import List, Optional, Union

import pytest

from agentic_autocoder.config import Config
from agentic_autocoder.model_client import CompletionResult, Message, ModelClient


class FakeModelClient(ModelClient):
    """Returns scripted replies in order; an Exception entry is raised instead."""

    def __init__(self, replies: Optional[List[Union[str, Exception]]] = None):
        self.replies = list(replies or [])
        self.calls: List[List[Message]] = []
        self.closed = False

    def complete(self, messages, model, timeout=30.0, max_tokens=None,
                 include_reasoning=False, reasoning_effort="low"):
        self.calls.append(messages)
        if not self.replies:
            raise AssertionError("FakeModelClient ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return CompletionResult(content=reply, model=model)

    def close(self):
        self.closed = True


def analysis_reply(solution=None, should_stop=False, explanation="Something broke") -> str:
    return json.dumps({
        "analysis": "The operation failed",
        "explanation": explanation,
        "solution": solution,
        "shouldStop": should_stop,
    })


@pytest.fixture
def fake_client():
    return FakeModelClient()


@pytest.fixture
def config(tmp_path):
    return Config(
        openrouter_api_key="test-key",
        workspace_root=tmp_path,
        max_retries=3,
        retry_delay_s=0.0,
        request_timeout_s=5.0,
        step_delay_s=0.0,
    )


@pytest.fixture
def no_sleep():
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep

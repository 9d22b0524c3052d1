from __future__ import annotations

from typing import Iterable


class FakeLLMProvider:
    def __init__(self, response: str = "Thanks for reaching out! How can I help you today?") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self.calls: list[list[dict]] = []

    def stream(self, messages: list[dict]) -> Iterable[str]:
        # Record prompts so tests can assert which phase reached the model.
        self.calls.append(messages)
        tokens = self._response.split(" ")
        for idx, token in enumerate(tokens):
            yield token if idx == len(tokens) - 1 else f"{token} "

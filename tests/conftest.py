import pytest

from decanter import llm_client, main
from decanter.config import Settings, reset_settings

VALID_CODE = "def add(a, b):\n    return a + b\n"

REVIEW_JSON = (
    '{"title": "Addition, but make it a function", '
    '"diagnosis": "It adds two numbers. There are no types and no tests.", '
    '"fix": "Add type hints.", '
    '"refactoredCode": "def add(a: int, b: int) -> int:\\n    return a + b", '
    '"language": "python", "level": "Intern", "score": 61}'
)

NARRATION_JSON = (
    '{"title": "feat: add addition helper", "summary": "Adds an add() helper.", '
    '"type": "FEAT", "changes": ["Add add() to math utils"], '
    '"impact": "Low risk, new code only.", "testing": "Run the unit tests."}'
)


class FakeInvoker:
    """Stands in for GeminiInvoker; records prompts and replays canned output."""

    def __init__(self, text="", chunks=None, error=None, configured=True):
        self.text = text
        self.chunks = list(chunks or [])
        self.error = error
        self.configured = configured
        self.prompts = []
        self.closed = False

    def status(self):
        return {"provider": "fake", "model": "fake-1", "has_token": self.configured}

    async def complete(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.text

    async def stream(self, prompt):
        self.prompts.append(prompt)
        try:
            for chunk in self.chunks:
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    async def aclose(self):
        pass


@pytest.fixture(autouse=True)
def fresh_state():
    reset_settings(Settings(gemini_api_key="test-key"))
    main.reset_rate_limiter()
    main.set_diff_resolver(None)
    llm_client.reset_invoker()
    yield
    reset_settings()
    main.reset_rate_limiter()
    main.set_diff_resolver(None)
    llm_client.reset_invoker()


@pytest.fixture
def use_invoker(monkeypatch):
    def _install(invoker):
        monkeypatch.setattr(main, "get_invoker", lambda: invoker)
        return invoker

    return _install

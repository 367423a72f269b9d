"""
Shared fixtures: a scripted fake LLM service, a small source tree and a
PipelineContext factory. No network access or API keys are needed.
"""

import os
import re
import asyncio
import tempfile

# Log files go to a throwaway directory, set before any utils module is imported
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="tutorial_gen_test_logs_"))

import pytest

from context import GenerationRequest, PipelineContext
from utils.call_llm import LLMSettings
from utils.models import SourceFile
from utils.prompt_cache import PromptCache
from utils.repo_cache import RepoCacheStore

REPO_URL = "https://github.com/example/widgets"

ABSTRACTIONS_RESPONSE = """Here are the abstractions:

```yaml
- name: |
    Alpha
  description: |
    The entry point. Like a front door.
  file_indices:
    - 0 # src/app.py
- name: |
    Beta
  description: |
    A cache in front of the store.
  file_indices:
    - 1 # src/cache.py
- name: |
    Gamma
  description: |
    Models and their persistence.
  file_indices:
    - 2 # src/models.py
    - 3 # src/store.py
```
"""

RELATIONSHIPS_RESPONSE = """```yaml
summary: |
  A **tiny** widget service.
relationships:
  - from_abstraction: 0 # Alpha
    to_abstraction: 1 # Beta
    label: "Uses"
  - from_abstraction: 1 # Beta
    to_abstraction: 2 # Gamma
    label: "Reads through"
```"""

PARTIAL_RELATIONSHIPS_RESPONSE = """```yaml
summary: |
  A **tiny** widget service.
relationships:
  - from_abstraction: 0 # Alpha
    to_abstraction: 1 # Beta
    label: "Uses"
```"""

ORDER_RESPONSE = """```yaml
- 0 # Alpha
- 1 # Beta
- 2 # Gamma
```"""

_CHAPTER_PROMPT = re.compile(r'about the (?:concept|subsystem): "(?P<name>[^"]+)"\. This is Chapter (?P<num>\d+)\.')


class FakeLLM:
    """
    Async LLM call service answering each stage's prompt with a canned
    response. Every prompt is recorded; chapter prompts also in chapter_calls.
    """

    def __init__(self, abstractions=ABSTRACTIONS_RESPONSE, relationships=RELATIONSHIPS_RESPONSE,
                 order=ORDER_RESPONSE):
        self.responses = {
            "abstractions": abstractions,
            "relationships": relationships,
            "order": order,
        }
        self.version = 1
        self.calls = []
        self.chapter_calls = []

    def classify(self, prompt):
        if _CHAPTER_PROMPT.search(prompt):
            return "chapter"
        if "Identify the top" in prompt:
            return "abstractions"
        if "Output the ordered list" in prompt:
            return "order"
        if "`relationships`" in prompt:
            return "relationships"
        raise AssertionError(f"Unexpected prompt: {prompt[:200]}")

    def chapter_text(self, prompt):
        match = _CHAPTER_PROMPT.search(prompt)
        return f"# Chapter {match['num']}: {match['name']}\n\n{match['name']} explained (v{self.version})."

    async def __call__(self, prompt, settings):
        kind = self.classify(prompt)
        self.calls.append((kind, prompt))
        if kind == "chapter":
            self.chapter_calls.append(prompt)
            return self.chapter_text(prompt)
        return self.responses[kind]

    def count(self, kind):
        return sum(1 for k, _ in self.calls if k == kind)


class FlakyLLM(FakeLLM):
    """Answers the first `failures` prompts of one kind with `bad`, then correctly."""

    def __init__(self, kind="abstractions", bad="garbage", failures=1, **kwargs):
        super().__init__(**kwargs)
        self.flaky_kind = kind
        self.bad = bad
        self.failures = failures

    async def __call__(self, prompt, settings):
        response = await super().__call__(prompt, settings)
        if self.classify(prompt) == self.flaky_kind and self.count(self.flaky_kind) <= self.failures:
            return self.bad
        return response


class BlockingLLM(FakeLLM):
    """Hangs on the first chapter prompt until the test cancels the run."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = None

    async def __call__(self, prompt, settings):
        if self.classify(prompt) == "chapter":
            self.started.set()
            await asyncio.Event().wait()
        return await super().__call__(prompt, settings)


def make_files(**overrides):
    contents = {
        "src/app.py": "from src.cache import Cache\n\ndef main():\n    return Cache().get('w')\n",
        "src/cache.py": "class Cache:\n    def get(self, key):\n        return key\n",
        "src/models.py": "class Widget:\n    name = 'w'\n",
        "src/store.py": "def save(widget):\n    return True\n",
    }
    contents.update(overrides)
    return [SourceFile(path, content) for path, content in contents.items()]


@pytest.fixture
def settings():
    return LLMSettings(provider="FAKE", model="fake-model")


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def cache_dir(tmp_path):
    return str(tmp_path / "cache")


@pytest.fixture
def repo_store(cache_dir):
    return RepoCacheStore(cache_dir)


@pytest.fixture
def prompt_cache(cache_dir):
    return PromptCache(os.path.join(cache_dir, "llm_cache.json"))


@pytest.fixture
def make_ctx(settings, fake_llm, repo_store, prompt_cache):
    """Factory for a PipelineContext wired to the fake LLM and the temp caches."""

    def _make(files=None, service=None, **request_kwargs):
        request_kwargs.setdefault("repo_url", REPO_URL)
        request_kwargs.setdefault("project_name", "widgets")
        request = GenerationRequest(files=files if files is not None else make_files(), **request_kwargs)
        return PipelineContext(
            request=request,
            llm_settings=settings,
            llm_service=service or fake_llm,
            prompt_cache=prompt_cache,
            repo_store=repo_store,
        )

    return _make

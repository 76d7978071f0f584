import asyncio
import json
import re

import pytest

from main import Settings


SCRIPT_PANELS = [
    {"panel": 1, "description": "The Pizza Professor in scene 1 holding a dough ball", "dialogue": "Every qubit starts as dough!"},
    {"panel": 2, "description": "The Pizza Professor in scene 2 spinning the dough", "dialogue": "Spin it and it's many shapes at once."},
    {"panel": 3, "description": "The Pizza Professor in scene 3 opening the oven", "dialogue": "Peek in the oven and it picks one shape."},
    {"panel": 4, "description": "The Pizza Professor in scene 4 with a finished pizza", "dialogue": "That's quantum computing, fresh from the oven!"},
]

EXPLANATION = (
    "Imagine a pizza that is every topping at once until you take a bite.\n\n"
    "Qubits are like that dough, spinning through every shape.\n\n"
    "Buon appetito, future quantum chefs!"
)

_SCENE_RE = re.compile(r"scene (\d)")


class FakeGAIC:
    """Stands in for GAIC; records every call and answers from canned values."""

    def __init__(self, explanation=EXPLANATION, script=None, images=None, delays=None):
        self.settings = Settings(api_key="test-key")
        self.explanation = explanation
        self.script = json.dumps(SCRIPT_PANELS) if script is None else script
        # panel number -> bytes | None | Exception
        self.images = images or {}
        # panel number -> seconds to wait before answering
        self.delays = delays or {}
        self.text_calls = []
        self.image_prompts = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        self.closed = True

    async def generate_text(self, prompt, system_instruction=None, temperature=None,
                            top_p=None, top_k=None, json_response=False):
        self.text_calls.append({
            "prompt": prompt,
            "system_instruction": system_instruction,
            "temperature": temperature,
            "top_p": top_p,
            "top_k": top_k,
            "json_response": json_response,
        })
        answer = self.script if json_response else self.explanation
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def generate_image(self, prompt):
        self.image_prompts.append(prompt)
        panel = int(_SCENE_RE.search(prompt).group(1))
        await asyncio.sleep(self.delays.get(panel, 0))
        answer = self.images.get(panel, f"jpeg-bytes-{panel}".encode())
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def make_client():
    return FakeGAIC


@pytest.fixture
def script_panels():
    return [dict(p) for p in SCRIPT_PANELS]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("GEMINI_API_KEY", "API_KEY", "IMAGE_BACKEND", "IMAGE_MODEL", "FAL_API_KEY",
                 "TEXT_MODEL", "PRINT_PROMPTS", "PROMPT_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

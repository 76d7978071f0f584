# main.py
import io
import os
import re
import sys
import json
import base64
import asyncio
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, model_validator
from PIL import Image

# Google AI SDK (text always, images with the imagen backend)
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

# Fal AI SDK for the alternative image backend
import fal_client
import requests

# ------------------ ENV & CONFIG ------------------
load_dotenv()

DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODELS = {
    "imagen": "imagen-4.0-generate-001",
    "fal": "fal-ai/nano-banana",
}

PANEL_COUNT = 4
STYLE_PRESET = "A simple and cute webcomic panel in a flat color style with clear outlines."
IMAGE_MIME = "image/jpeg"
AUTH_ERROR_MESSAGE = "There's an issue with the API key. Please check the server configuration."


class ExplainerError(RuntimeError):
    """Base class for everything the explainer surfaces to its callers."""


class MissingCredential(ExplainerError):
    pass


class AuthError(ExplainerError):
    def __init__(self, message: str = AUTH_ERROR_MESSAGE):
        super().__init__(message)


class GenerationFailure(ExplainerError):
    """
    A request that could not be turned into an explanation and comic.
    `reason` is the underlying cause; str() is the message shown to users.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"Sorry, I burnt the pizza! The explanation couldn't be generated. Reason: {reason}")


class EmptyResponse(GenerationFailure):
    def __init__(self, reason: str = "The model returned an empty text response. The kitchen might be closed!"):
        super().__init__(reason)


class ScriptFormatError(GenerationFailure):
    def __init__(self, details: str):
        self.details = details
        super().__init__(
            f"Sorry, I couldn't write the comic script. The recipe was wrong! (Details: {details})")


class ImageGenerationFailure(GenerationFailure):
    def __init__(self, panel: int):
        self.panel = panel
        super().__init__(f"Image generation failed for panel {panel}.")


class Settings(BaseModel):
    """Process-wide, read-only configuration handed to the client wrapper."""
    model_config = ConfigDict(frozen=True)

    api_key: str
    text_model: str = DEFAULT_TEXT_MODEL
    image_backend: Literal["imagen", "fal"] = "imagen"
    image_model: str = DEFAULT_IMAGE_MODELS["imagen"]
    fal_api_key: Optional[str] = None
    explanation_temperature: float = 0.7
    explanation_top_p: float = 0.95
    explanation_top_k: int = 64
    print_prompts: bool = False
    prompt_log_file: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
        if not api_key:
            raise MissingCredential(
                "GEMINI_API_KEY environment variable not set. Please set it in your environment or .env")

        backend = os.getenv("IMAGE_BACKEND", "imagen").strip().lower()
        if backend not in DEFAULT_IMAGE_MODELS:
            raise ExplainerError(f"Unknown IMAGE_BACKEND '{backend}' (expected imagen or fal)")
        fal_api_key = os.getenv("FAL_API_KEY")
        if backend == "fal" and not fal_api_key:
            raise MissingCredential("FAL_API_KEY environment variable not set but IMAGE_BACKEND=fal")

        prompt_log_file = os.getenv("PROMPT_LOG_FILE")
        return cls(
            api_key=api_key,
            text_model=os.getenv("TEXT_MODEL", DEFAULT_TEXT_MODEL),
            image_backend=backend,
            image_model=os.getenv("IMAGE_MODEL", DEFAULT_IMAGE_MODELS[backend]),
            fal_api_key=fal_api_key,
            explanation_temperature=float(os.getenv("EXPLANATION_TEMPERATURE", "0.7")),
            explanation_top_p=float(os.getenv("EXPLANATION_TOP_P", "0.95")),
            explanation_top_k=int(os.getenv("EXPLANATION_TOP_K", "64")),
            print_prompts=os.getenv("PRINT_PROMPTS", "0") == "1",
            prompt_log_file=Path(prompt_log_file) if prompt_log_file else None,
        )

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


PERSONA_INSTRUCTION = load_prompt("pizza_professor")
EXPLANATION_TPL = load_prompt("explanation_request")
COMIC_SCRIPT_TPL = load_prompt("comic_script")
PANEL_IMAGE_TPL = load_prompt("panel_image")

# ------------------ DATA MODELS -------------------


class PanelScript(BaseModel):
    panel: int = Field(ge=1, le=PANEL_COUNT, strict=True)
    description: str = Field(min_length=1)
    dialogue: str = Field(min_length=1)


class ComicScript(RootModel[List[PanelScript]]):
    root: Annotated[List[PanelScript], Field(min_length=PANEL_COUNT, max_length=PANEL_COUNT)]

    @model_validator(mode="after")
    def panels_numbered_in_order(self) -> "ComicScript":
        numbers = [p.panel for p in self.root]
        expected = list(range(1, PANEL_COUNT + 1))
        if numbers != expected:
            raise ValueError(f"panels must be numbered {expected} in order, got {numbers}")
        return self


class ScriptParse(BaseModel):
    """Tagged outcome of reading a comic script out of model text."""
    ok: bool
    panels: List[PanelScript] = Field(default_factory=list)
    error: Optional[str] = None


class PanelWithImage(PanelScript):
    model_config = ConfigDict(frozen=True)

    image: str  # data:image/jpeg;base64,...


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    explanation: str
    comic: Annotated[List[PanelWithImage], Field(min_length=PANEL_COUNT, max_length=PANEL_COUNT)]

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", v)
    return out.strip()


_FENCE_RE = re.compile(r"^```(\w*)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Return the body of a ```lang ... ``` block, or the trimmed text if it isn't fenced."""
    s = (text or "").strip()
    m = _FENCE_RE.match(s)
    if m and m.group(2):
        return m.group(2).strip()
    return s


def to_data_uri(img_bytes: bytes, mime: str = IMAGE_MIME) -> str:
    return f"data:{mime};base64,{base64.b64encode(img_bytes).decode('utf-8')}"


def ensure_jpeg(img_bytes: bytes) -> bytes:
    """Check the payload decodes as an image; re-encode to JPEG unless it already is one."""
    img = Image.open(io.BytesIO(img_bytes))
    if img.format == "JPEG":
        return img_bytes

    if img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=90)
    return out.getvalue()


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None, echo: bool = False):
        self.out_file = out_file
        self.echo = echo
        self.lines: List[str] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromptLogger":
        return cls(settings.prompt_log_file, settings.print_prompts)

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if self.echo:
            print(block)

    def flush(self):
        if not self.out_file or not self.lines:
            return
        self.out_file.parent.mkdir(parents=True, exist_ok=True)
        with self.out_file.open("a", encoding="utf-8") as f:
            f.write("".join(self.lines))
        self.lines = []

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.client = genai.Client(api_key=settings.api_key)
        # one fal client per wrapper so its pooled httpx client can be closed with it
        self.fal = fal_client.AsyncClient(key=settings.fal_api_key) if settings.image_backend == "fal" else None

    async def __aenter__(self) -> "GAIC":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the async HTTP clients held by the SDKs."""
        # fal caches its httpx client under _client on first use and has no close of its own
        if self.fal is not None and "_client" in vars(self.fal):
            http = await self.fal._client
            await http.aclose()
        await self.client.aio.aclose()

    async def generate_text(self, prompt: str, system_instruction: Optional[str] = None,
                            temperature: Optional[float] = None, top_p: Optional[float] = None,
                            top_k: Optional[int] = None, json_response: bool = False) -> str:
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=temperature,
            top_p=top_p,
            top_k=top_k,
            response_mime_type="application/json" if json_response else None,
        )
        resp = await self.client.aio.models.generate_content(
            model=self.settings.text_model, contents=prompt, config=config)
        if getattr(resp, "text", ""):
            return resp.text
        out = []
        for c in getattr(resp, "candidates", None) or []:
            content = getattr(c, "content", None)
            for p in getattr(content, "parts", None) or []:
                if getattr(p, "text", None):
                    out.append(p.text)
        return "\n".join(out).strip()

    async def generate_image(self, prompt: str) -> Optional[bytes]:
        """
        Generate a single JPEG image for the prompt.
        Returns None when the backend answered with zero images.
        """
        if self.settings.image_backend == "fal":
            raw = await self._generate_image_with_fal(prompt)
        else:
            raw = await self._generate_image_with_imagen(prompt)
        if raw is None:
            return None
        return ensure_jpeg(raw)

    async def _generate_image_with_imagen(self, prompt: str) -> Optional[bytes]:
        resp = await self.client.aio.models.generate_images(
            model=self.settings.image_model,
            prompt=prompt,
            config=types.GenerateImagesConfig(number_of_images=1, output_mime_type=IMAGE_MIME),
        )
        generated = getattr(resp, "generated_images", None) or []
        if not generated or generated[0].image is None or not generated[0].image.image_bytes:
            return None
        return generated[0].image.image_bytes

    async def _generate_image_with_fal(self, prompt: str) -> Optional[bytes]:
        result = await self.fal.subscribe(
            self.settings.image_model,
            arguments={
                "prompt": prompt,
                "num_images": 1,
                "output_format": "jpeg",
            },
        )
        images = result.get("images") or []
        if not images:
            return None

        response = await asyncio.to_thread(requests.get, images[0]["url"], timeout=60)
        if response.status_code != 200:
            raise RuntimeError(f"Failed to download image from Fal: {response.status_code}")
        return response.content

# ------------------ PIPELINE STEPS ---------------


async def generate_text_explanation(g: GAIC, topic: str, log: PromptLogger) -> str:
    """Ask the Pizza Professor for a few paragraphs on the topic."""
    prompt = fill(EXPLANATION_TPL, topic=topic)
    log.log("EXPLANATION_PROMPT", prompt)
    settings = g.settings
    text = await g.generate_text(
        prompt,
        system_instruction=PERSONA_INSTRUCTION,
        temperature=settings.explanation_temperature,
        top_p=settings.explanation_top_p,
        top_k=settings.explanation_top_k,
    )
    if not text or not text.strip():
        raise EmptyResponse()
    log.log("EXPLANATION_RESPONSE", text)
    return text


def parse_comic_script(text: str) -> ScriptParse:
    json_str = strip_code_fence(text)
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        return ScriptParse(ok=False, error=f"Comic script is not valid JSON: {e}")
    try:
        script = ComicScript.model_validate(data)
    except ValidationError as e:
        return ScriptParse(
            ok=False,
            error="Invalid comic script format received from model. "
                  f"Expected a {PANEL_COUNT}-panel comic. ({_format_validation_error(e)})",
        )
    return ScriptParse(ok=True, panels=script.root)


def extract_comic_script(text: str) -> List[PanelScript]:
    parsed = parse_comic_script(text)
    if not parsed.ok:
        print(f"[ERROR] Failed to parse comic script JSON: {strip_code_fence(text)}")
        raise ScriptFormatError(parsed.error)
    return parsed.panels


def build_panel_image_prompt(panel: PanelScript) -> str:
    return fill(PANEL_IMAGE_TPL, STYLE_PRESET=STYLE_PRESET, description=panel.description.strip().rstrip("."))


async def generate_comic(g: GAIC, topic: str, log: PromptLogger) -> List[PanelWithImage]:
    """Write a 4-panel script, then draw every panel at once."""
    prompt = fill(COMIC_SCRIPT_TPL, topic=topic)
    log.log("COMIC_SCRIPT_PROMPT", prompt)
    raw = await g.generate_text(prompt, json_response=True)
    log.log("COMIC_SCRIPT_RESPONSE", raw or "<empty>")
    script = extract_comic_script(raw)
    print(f"   Script ready: {len(script)} panels")

    image_prompts = [build_panel_image_prompt(p) for p in script]
    for p, image_prompt in zip(script, image_prompts):
        log.log(f"PANEL_IMAGE_PROMPT [#{p.panel}]", image_prompt)

    # gather keeps results in submission order, so zip below pairs each image with its panel
    images = await asyncio.gather(*(g.generate_image(ip) for ip in image_prompts))

    panels = []
    for index, (p, img_bytes) in enumerate(zip(script, images), start=1):
        if not img_bytes:
            raise ImageGenerationFailure(index)
        panels.append(PanelWithImage(**p.model_dump(), image=to_data_uri(img_bytes)))
    return panels


def is_auth_problem(e: BaseException) -> bool:
    if isinstance(e, genai_errors.APIError) and e.code == 401:
        return True
    msg = str(e)
    return "API key" in msg or "API_KEY" in msg


async def explain_with_pizza(g: GAIC, topic: str, log: Optional[PromptLogger] = None) -> GenerationResult:
    """
    Generate the explanation and the comic for a topic concurrently.

    Either both come back or the whole call fails:
      - AuthError when the credential was rejected
      - the GenerationFailure subclass raised by a step, unchanged
      - GenerationFailure wrapping anything else
    """
    log = log or PromptLogger()
    print(f">> Explaining {topic!r} with pizza...")
    try:
        explanation, comic = await asyncio.gather(
            generate_text_explanation(g, topic, log),
            generate_comic(g, topic, log),
        )
    except Exception as e:
        print(f"[ERROR] Error generating content from Gemini API: {e}")
        if is_auth_problem(e):
            raise AuthError() from e
        if isinstance(e, GenerationFailure):
            raise
        raise GenerationFailure(str(e) or type(e).__name__) from e
    finally:
        log.flush()

    print(f"   ✓ Explanation ({len(explanation)} chars) and {len(comic)} panels")
    return GenerationResult(explanation=explanation, comic=comic)


async def run_topic(settings: Settings, topic: str) -> GenerationResult:
    """One CLI run: a wrapper that is closed before the event loop goes away."""
    async with GAIC(settings) as g:
        return await explain_with_pizza(g, topic, PromptLogger.from_settings(settings))


# ------------------ CLI -------------------------
if __name__ == "__main__":
    if len(sys.argv) < 2 or not sys.argv[1].strip():
        print('Usage: python main.py "<topic>"')
        sys.exit(2)

    topic = sys.argv[1].strip()
    try:
        settings = Settings.from_env()
        result = asyncio.run(run_topic(settings, topic))
    except ExplainerError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)

    print()
    print(result.explanation)
    print()
    for panel in result.comic:
        print(f"Panel {panel.panel}: \"{panel.dialogue}\"")

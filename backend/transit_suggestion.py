"""Jeepney route suggestions from a text-generation model.

The client embeds both waypoints and the static jeepney route catalog in a
single user message, asks the model for a strict JSON answer, and validates
the answer's shape before returning it. Geographic plausibility is the
model's responsibility; only the structure is checked here.

Two text-generation backends are supported:
  openai:     GPT chat completions with ``response_format=json_object``.
  anthropic:  Claude messages with a JSON-only system prompt and a ``{``
              prefill.
Selected with ``TRANSIT_LLM_PROVIDER`` (default ``openai``).
"""

import asyncio
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import ValidationError

from errors import MalformedResponseError, MissingWaypointError, ProviderError
from models import Location, TokenUsage, TransitStep, TransitSuggestion, Waypoint

logger = logging.getLogger(__name__)

# Models used for each backend. Kept here so they can be updated in one place.
OPENAI_MODEL: str = "gpt-4o-mini"
ANTHROPIC_MODEL: str = "claude-haiku-4-5-20251001"

SUGGESTION_TEMPERATURE: float = 0.7
SUGGESTION_MAX_TOKENS: int = 1024
SUGGESTION_TIMEOUT_S: float = 45.0

DEFAULT_CATALOG_PATH: Path = Path(__file__).parent / "ruta_data" / "jeepney_routes.json"

_SYSTEM_PROMPT = """\
You are a Cebu City commuting assistant. You help people travel by jeepney.

You will receive the commuter's current location, their destination, and the
list of known jeepney routes. Suggest the best way to get there using only
the routes provided.

Return ONLY a valid JSON object with exactly these fields:

  route_summary   string   One or two sentences describing the trip.
  steps           array    Ordered legs, each an object with:
                             jeepney  string  Route code (e.g. "04L")
                             from     string  Where to board
                             to       string  Where to alight
  alternatives    array    Other options, same shape as steps. May be empty.
"""

_JSON_SYSTEM_SUFFIX = (
    "\n\nRespond with ONLY valid JSON. No markdown, no explanation, no "
    "commentary. Your entire response must be a single JSON object."
)


# ---------------------------------------------------------------------------
# Text-generation backends
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Generation:
    """Raw model output plus the token counts the provider reported."""

    text: str
    usage: TokenUsage | None = None


class TextGenerator(ABC):
    """A text-generation provider that answers with a JSON document."""

    name: str = "llm"

    @abstractmethod
    async def generate(self, system: str, user: str) -> Generation:
        """Returns the raw model output.

        Raises:
            ProviderError: On network failure or a non-success status.
            MalformedResponseError: If the reply carries no text at all.
        """


class OpenAITextGenerator(TextGenerator):
    """Chat completions in JSON mode."""

    name = "openai"

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        model: str = OPENAI_MODEL,
        timeout: float = SUGGESTION_TIMEOUT_S,
    ):
        self._client = client
        self.model = model
        self.timeout = timeout

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=os.environ.get("OPENAI_API_KEY", ""), timeout=self.timeout
            )
        return self._client

    async def generate(self, system: str, user: str) -> Generation:
        logger.info("Calling OpenAI (%s) for transit suggestion", self.model)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=SUGGESTION_TEMPERATURE,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as exc:
            raise ProviderError(self.name, exc.message, status=exc.status_code) from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(self.name, type(exc).__name__) from exc
        except openai.OpenAIError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        choices = getattr(response, "choices", None) or []
        if not choices or getattr(choices[0], "message", None) is None:
            raise MalformedResponseError("OpenAI returned no choices.")

        usage = None
        raw_usage = getattr(response, "usage", None)
        if raw_usage is not None:
            usage = TokenUsage(
                prompt_tokens=raw_usage.prompt_tokens or 0,
                completion_tokens=raw_usage.completion_tokens or 0,
                total_tokens=raw_usage.total_tokens or 0,
            )
            logger.info(
                "OpenAI usage: prompt=%s completion=%s total=%s",
                usage.prompt_tokens, usage.completion_tokens, usage.total_tokens,
            )
        return Generation(text=choices[0].message.content or "", usage=usage)


class AnthropicTextGenerator(TextGenerator):
    """Claude messages with a JSON-only system prompt and ``{`` prefill."""

    name = "anthropic"

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        *,
        model: str = ANTHROPIC_MODEL,
        timeout: float = SUGGESTION_TIMEOUT_S,
    ):
        self._client = client
        self.model = model
        self.timeout = timeout

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=os.environ.get("ANTHROPIC_API_KEY", ""), timeout=self.timeout
            )
        return self._client

    async def generate(self, system: str, user: str) -> Generation:
        logger.info("Calling Claude (%s) for transit suggestion", self.model)
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=SUGGESTION_MAX_TOKENS,
                system=system + _JSON_SYSTEM_SUFFIX,
                messages=[
                    {"role": "user", "content": user},
                    {"role": "assistant", "content": "{"},
                ],
            )
        except anthropic.APIStatusError as exc:
            raise ProviderError(self.name, exc.message, status=exc.status_code) from exc
        except anthropic.APIConnectionError as exc:
            raise ProviderError(self.name, type(exc).__name__) from exc
        except anthropic.AnthropicError as exc:
            raise ProviderError(self.name, str(exc)) from exc

        text = next(
            (
                block.text
                for block in getattr(response, "content", None) or []
                if isinstance(getattr(block, "text", None), str)
            ),
            None,
        )
        if text is None:
            raise MalformedResponseError("Claude returned no text block.")

        usage = None
        raw_usage = getattr(response, "usage", None)
        if raw_usage is not None:
            prompt = raw_usage.input_tokens or 0
            completion = raw_usage.output_tokens or 0
            usage = TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            )
            logger.info("Claude usage: input=%s output=%s", prompt, completion)

        # Prepend the "{" we used as prefill.
        return Generation(text="{" + text.strip(), usage=usage)


def default_generator() -> TextGenerator:
    """Returns the backend named by ``TRANSIT_LLM_PROVIDER``."""
    provider = os.environ.get("TRANSIT_LLM_PROVIDER", "openai").strip().lower()
    if provider == "anthropic":
        return AnthropicTextGenerator()
    if provider != "openai":
        logger.warning("Unknown TRANSIT_LLM_PROVIDER %r; using openai", provider)
    return OpenAITextGenerator()


# ---------------------------------------------------------------------------
# Catalog and request building
# ---------------------------------------------------------------------------


def load_catalog(path: str | Path | None = None) -> Any:
    """Reads the static jeepney route catalog.

    The document is passed through to the model untouched; nothing here
    depends on its structure.
    """
    catalog_path = Path(path or os.environ.get("TRANSIT_CATALOG_PATH", DEFAULT_CATALOG_PATH))
    with catalog_path.open(encoding="utf-8") as fh:
        catalog = json.load(fh)
    logger.info("Loaded transit catalog from %s", catalog_path)
    return catalog


def build_user_message(origin: Location, destination: Location, catalog: Any) -> str:
    """Builds the user message embedding both endpoints and the catalog."""
    catalog_text = catalog if isinstance(catalog, str) else json.dumps(
        catalog, indent=2, ensure_ascii=False
    )
    lines = [f"User_Current_Location: {origin.lat}, {origin.lng}"]
    if origin.name:
        lines.append(f"Current Location Name: {origin.name}")
    lines.append("")
    lines.append(f"Destination_Location: {destination.lat}, {destination.lng}")
    if destination.name:
        lines.append(f"Destination Name: {destination.name}")
    lines += [
        "",
        "Here are the available jeepney routes in Cebu City:",
        catalog_text,
        "",
        "Please suggest the best jeepney route(s) to get from the current "
        "location to the destination.",
    ]
    return "\n".join(lines)


def _require(endpoint: Waypoint | Location | None, role: str) -> Location:
    if endpoint is None:
        raise MissingWaypointError(f"{role} location is required.")
    location = (
        Location.from_waypoint(endpoint) if isinstance(endpoint, Waypoint) else endpoint
    )
    # Zero is a valid coordinate; only absence counts as missing.
    if location.lat is None or location.lng is None:
        raise MissingWaypointError(f"{role} location is missing coordinates.")
    return location


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _extract_json_object(text: str) -> dict | None:
    """Extracts the first JSON object from text that may contain extra commentary."""
    text = text.strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except (json.JSONDecodeError, ValueError):
        pass

    # Try each "{" in turn; raw_decode stops at the end of the first complete
    # value, so trailing prose or a second object does not spoil the parse.
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", text):
        try:
            parsed, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    return None


def parse_suggestion(raw: str) -> TransitSuggestion:
    """Validates the model output.

    ``route_summary`` and a non-empty ``steps`` list are required.
    Alternatives that do not match the step shape are dropped.

    Raises:
        MalformedResponseError: If the output is not JSON or lacks a
            required field.
    """
    data = _extract_json_object(raw)
    if data is None:
        logger.warning("Transit suggestion was not valid JSON: %s", raw[:200])
        raise MalformedResponseError("Model response was not valid JSON.")

    missing = [field for field in ("route_summary", "steps") if field not in data]
    if missing:
        raise MalformedResponseError(f"Model response is missing {', '.join(missing)}.")

    alternatives: list[TransitStep] = []
    raw_alternatives = data.get("alternatives") or []
    if isinstance(raw_alternatives, list):
        for item in raw_alternatives:
            try:
                alternatives.append(TransitStep.model_validate(item))
            except ValidationError:
                logger.warning("Dropping malformed alternative: %s", str(item)[:200])

    try:
        return TransitSuggestion(
            summary=data["route_summary"],
            steps=data["steps"],
            alternatives=alternatives,
        )
    except ValidationError as exc:
        raise MalformedResponseError(
            f"Model response has an invalid shape: {exc.error_count()} error(s)."
        ) from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TransitSuggestionClient:
    """Requests and validates jeepney suggestions.

    Args:
        generator: Text-generation backend.
        catalog: Static route catalog, embedded verbatim in every request.
        system_prompt: Instruction preamble sent as the system message.
        timeout: Upper bound for one provider call.
    """

    def __init__(
        self,
        generator: TextGenerator,
        catalog: Any,
        *,
        system_prompt: str = _SYSTEM_PROMPT,
        timeout: float = SUGGESTION_TIMEOUT_S,
    ):
        self.generator = generator
        self.catalog = catalog
        self.system_prompt = system_prompt
        self.timeout = timeout

    async def suggest(
        self,
        from_location: Waypoint | Location | None,
        to_location: Waypoint | Location | None,
    ) -> TransitSuggestion:
        """Returns a validated ``TransitSuggestion``.

        Raises:
            MissingWaypointError: Before any network call, if an endpoint or
                one of its coordinates is absent.
            ProviderError: If the provider call fails or times out.
            MalformedResponseError: If the answer has the wrong shape.
        """
        suggestion, _ = await self.suggest_with_usage(from_location, to_location)
        return suggestion

    async def suggest_with_usage(
        self,
        from_location: Waypoint | Location | None,
        to_location: Waypoint | Location | None,
    ) -> tuple[TransitSuggestion, TokenUsage | None]:
        """Like ``suggest``, also returning the provider's token counts."""
        origin = _require(from_location, "From")
        destination = _require(to_location, "To")

        user_message = build_user_message(origin, destination, self.catalog)
        logger.info("Requesting transit suggestion via %s", self.generator.name)
        try:
            generation = await asyncio.wait_for(
                self.generator.generate(self.system_prompt, user_message), self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning("%s timed out after %ss", self.generator.name, self.timeout)
            raise ProviderError(self.generator.name, "request timed out") from exc

        logger.info("Raw AI output preview: %s", generation.text[:200])
        suggestion = parse_suggestion(generation.text)
        logger.info(
            "Transit suggestion received: %d step(s), %d alternative(s)",
            len(suggestion.steps), len(suggestion.alternatives),
        )
        return suggestion, generation.usage

import json
import logging
import re
from typing import TypeVar

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel

from intake.config import (
    ANTHROPIC_API_KEY,
    DUMMY_MODE,
    LLM_DEFAULT_TIER,
    LLM_MAX_TOKENS,
    LLM_MODEL_FAST,
    LLM_MODEL_HIGH,
    LLM_MODEL_STANDARD,
    LLM_PROVIDER,
    LLM_TEMPERATURE,
    OPENAI_API_KEY,
)
from intake.models.medical import MedicalRecord
from intake.models.turn import ChatMessage
from intake.services.completeness import determine_agent

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class GeneratorConfigurationError(RuntimeError):
    """The upstream generator cannot be reached because of configuration."""


_ANTHROPIC_DEFAULTS = {
    "fast": "claude-3-haiku-20240307",
    "standard": "claude-3-5-sonnet-20240620",
    "high": "claude-3-5-sonnet-20240620",
}

_OPENAI_DEFAULTS = {
    "fast": "gpt-4o-mini",
    "standard": "gpt-4o",
    "high": "gpt-4o",
}

_DUMMY_REPLIES = {
    "Triage": "Hello! I'm here to help you today. What brings you in?",
    "ClinicalInvestigator": "Thanks for sharing that. When did it start, and has it been getting better or worse?",
    "RecordsClerk": "Do you have any recent lab results, discharge letters or pill bottles you could photograph?",
    "HistorySpecialist": "Do you take any medications, have any allergies, or have any ongoing conditions?",
    "HandoverSpecialist": "Thank you, I have everything I need. Is there anything else worrying you?",
}


def _strip_json(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start:end + 1]
    return text


def _conversation_turns(history: list[ChatMessage]) -> list[dict]:
    """Map stored messages to alternating user/assistant turns."""
    turns: list[dict] = []
    for msg in history:
        role = "user" if msg.role == "user" else "assistant"
        text = msg.text or ""
        if msg.images:
            text += f"\n\n[{len(msg.images)} image(s) attached]"
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n\n" + text
        else:
            turns.append({"role": role, "content": text})
    if not turns or turns[0]["role"] != "user":
        turns.insert(0, {"role": "user", "content": "(conversation start)"})
    return turns


class LLMClient:
    def __init__(self) -> None:
        provider = (LLM_PROVIDER or "auto").lower()
        if provider == "auto":
            if DUMMY_MODE:
                provider = "dummy"
            elif ANTHROPIC_API_KEY:
                provider = "anthropic"
            elif OPENAI_API_KEY:
                provider = "openai"
            else:
                provider = "unconfigured"
        self.provider = provider

        self._anthropic = AsyncAnthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None
        self._openai = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

    def available(self) -> bool:
        if self.provider == "anthropic":
            return self._anthropic is not None
        if self.provider == "openai":
            return self._openai is not None
        return self.provider == "dummy"

    def _require_available(self) -> None:
        if not self.available():
            raise GeneratorConfigurationError(
                f"LLM provider '{self.provider}' is not configured; "
                "set ANTHROPIC_API_KEY or OPENAI_API_KEY, or enable DUMMY_MODE"
            )

    def model_for_tier(self, tier: str | None) -> str:
        tier = (tier or LLM_DEFAULT_TIER or "standard").lower()
        if tier not in ("fast", "standard", "high"):
            tier = "standard"

        if tier == "fast" and LLM_MODEL_FAST:
            return LLM_MODEL_FAST
        if tier == "standard" and LLM_MODEL_STANDARD:
            return LLM_MODEL_STANDARD
        if tier == "high" and LLM_MODEL_HIGH:
            return LLM_MODEL_HIGH

        if self.provider == "anthropic":
            return _ANTHROPIC_DEFAULTS[tier]
        return _OPENAI_DEFAULTS[tier]

    async def generate(
        self,
        history: list[ChatMessage],
        record: MedicalRecord,
        prompt: str,
        *,
        tier: str | None = None,
    ) -> str:
        """Run one conversation turn upstream and return the raw text.

        The output is not checked here; see ``response_parser``.
        """
        self._require_available()

        if self.provider == "dummy":
            return _dummy_reply(record)

        model = self.model_for_tier(tier)
        turns = _conversation_turns(history)

        if self.provider == "anthropic":
            message = await self._anthropic.messages.create(
                model=model,
                max_tokens=LLM_MAX_TOKENS,
                temperature=LLM_TEMPERATURE,
                system=prompt,
                messages=turns,
            )
            raw = ""
            for block in message.content:
                if hasattr(block, "text"):
                    raw += block.text
            return raw

        response = await self._openai.chat.completions.create(
            model=model,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            messages=[{"role": "system", "content": prompt}, *turns],
        )
        return response.choices[0].message.content or ""

    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        max_tokens: int = 1024,
        tier: str | None = None,
    ) -> T:
        self._require_available()
        if self.provider == "dummy":
            raise RuntimeError("Structured generation is not scripted in dummy mode")

        model = self.model_for_tier(tier)

        if self.provider == "anthropic":
            message = await self._anthropic.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            raw = ""
            for block in message.content:
                if hasattr(block, "text"):
                    raw += block.text
            return response_model.model_validate_json(_strip_json(raw))

        response = await self._openai.beta.chat.completions.parse(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format=response_model,
        )
        parsed = response.choices[0].message.parsed
        if parsed is None:
            raise RuntimeError("LLM parse returned no data")
        return parsed


def _dummy_reply(record: MedicalRecord) -> str:
    agent = determine_agent(record)
    return "```json\n" + json.dumps({
        "thought": {
            "differentialDiagnosis": [],
            "missingInformation": [],
            "strategy": "Scripted",
            "nextMove": _DUMMY_REPLIES[agent.value],
        },
        "reply": _DUMMY_REPLIES[agent.value],
        "updatedData": {},
        "activeAgent": agent.value,
    }) + "\n```"


_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
